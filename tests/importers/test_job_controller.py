import time
import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

import config
from db import get_session
from db.models import Catalog, Category, Product
from import_engine.errors import StateConflict, StorageUnavailable
from import_engine.importer import JobController
from import_engine.row_processor import RowProcessor
from services.catalog_service import CatalogService
from services.import_service import ImportService
from tests.factories import AttributeFactory, CatalogFactory, ImportJobFactory

REAL_PROCESS = RowProcessor.process
REAL_CREATE = CatalogService.create_product

HEADER = ["sku", "name", "price"]


def _rows(n, start=1):
    return [[f"SKU-{i}", f"Product {i}", "10"] for i in range(start, start + n)]


def _product_count(session, catalog_id):
    return session.scalar(
        select(func.count(Product.id)).where(Product.catalog_id == catalog_id))


def _reload(session, job_id):
    session.expire_all()
    return ImportService.get_job(session, job_id)


def _outside(fn, job_id):
    """Call a service operation the way a second API request would."""
    s = get_session()
    try:
        fn(s, job_id)
    finally:
        s.close()


@pytest.fixture
def catalog(session):
    return CatalogFactory(capacity=100)


def test_partial_success_completes_with_itemized_errors(session, catalog, run_import):
    """Invalid rows are logged and counted; the job still completes."""
    job, report = run_import(
        [HEADER, ["SKU-1", "One", "10"], ["SKU-2", "", "10"], ["SKU-3", "Three", "10"]],
        catalog_id=catalog.id,
    )

    assert report.accepted
    assert job.status == "completed"
    assert job.total_records == 3
    assert job.processed_records == 3
    assert job.success_count == 2
    assert job.error_count == 1
    assert job.completed_at is not None
    assert job.run_token is None

    errors = ImportService.list_errors(session, job.id)
    assert [(e.row_number, e.error_type, e.field) for e in errors] == [(2, "validation", "name")]
    assert _product_count(session, catalog.id) == 2


def test_warnings_do_not_count_as_errors(session, catalog, run_import):
    job, _ = run_import(
        [HEADER + ["sale_price", "cost_price"], ["SKU-1", "One", "50", "30", "40"]],
        catalog_id=catalog.id,
    )

    assert job.status == "completed"
    assert job.success_count == 1
    assert job.error_count == 0
    warnings = ImportService.list_errors(session, job.id, severity="warning")
    assert [(w.row_number, w.field) for w in warnings] == [(1, "sale_price")]
    assert job.processed_records == job.success_count + job.error_count


def test_empty_file_completes_immediately(session, catalog, run_import):
    job, report = run_import([HEADER], catalog_id=catalog.id)

    assert report.total_records == 0
    assert job.status == "completed"
    assert job.processed_records == 0


def test_pause_stops_at_row_boundary_and_resume_continues(session, catalog, make_csv):
    """No row is reprocessed after pause/resume and none is skipped."""
    job = ImportService.create_job(session, "Paused import", catalog_id=catalog.id)
    session.commit()
    path = make_csv([HEADER] + _rows(5))
    seen = []

    def pause_after_row_two(self, row):
        result = REAL_PROCESS(self, row)
        seen.append(row.row_number)
        if row.row_number == 2:
            _outside(ImportService.pause, job.id)
        return result

    with patch.object(RowProcessor, "process", autospec=True,
                      side_effect=pause_after_row_two):
        with open(path, "rb") as fh:
            ImportService.submit_file(session, job.id, "products.csv", fh)

        job = _reload(session, job.id)
        assert job.status == "paused"
        assert job.processed_records == 2
        assert job.last_processed_row == 2
        assert job.paused_at is not None
        assert job.run_token is None
        assert _product_count(session, catalog.id) == 2

        ImportService.resume(session, job.id)

    job = _reload(session, job.id)
    assert job.status == "completed"
    assert job.resumed_at is not None
    assert seen == [1, 2, 3, 4, 5]
    assert job.processed_records == 5
    assert job.success_count == 5
    assert _product_count(session, catalog.id) == 5


def test_cancel_during_run_keeps_committed_rows(session, catalog, make_csv):
    job = ImportService.create_job(session, "Cancelled import", catalog_id=catalog.id)
    session.commit()
    path = make_csv([HEADER] + _rows(4))

    def cancel_after_row_two(self, row):
        result = REAL_PROCESS(self, row)
        if row.row_number == 2:
            _outside(ImportService.cancel, job.id)
        return result

    with patch.object(RowProcessor, "process", autospec=True,
                      side_effect=cancel_after_row_two):
        with open(path, "rb") as fh:
            ImportService.submit_file(session, job.id, "products.csv", fh)

    job = _reload(session, job.id)
    assert job.status == "cancelled"
    assert job.canceled_at is not None
    assert job.processed_records == 2
    assert _product_count(session, catalog.id) == 2
    with pytest.raises(StateConflict):
        ImportService.resume(session, job.id)


def test_catalog_deleted_mid_run_fails_job(session, catalog, run_import):
    catalog_id = catalog.id

    def drop_catalog_after_row_two(self, row):
        result = REAL_PROCESS(self, row)
        if row.row_number == 2:
            s = get_session()
            s.delete(s.get(Catalog, catalog_id))
            s.commit()
            s.close()
        return result

    with patch.object(RowProcessor, "process", autospec=True,
                      side_effect=drop_catalog_after_row_two):
        job, _ = run_import([HEADER] + _rows(4), catalog_id=catalog_id)

    assert job.status == "failed"
    assert "Catalog" in job.last_error
    assert job.failed_at is not None
    assert job.processed_records == 2
    assert job.last_processed_row == 2


def test_retry_resumes_from_checkpoint(session, catalog, run_import):
    seen = []
    fail_once = {"armed": True}

    def flaky(self, row):
        if row.row_number == 3 and fail_once["armed"]:
            fail_once["armed"] = False
            raise StorageUnavailable("database went away")
        seen.append(row.row_number)
        return REAL_PROCESS(self, row)

    with patch.object(RowProcessor, "process", autospec=True, side_effect=flaky):
        job, _ = run_import([HEADER] + _rows(5), catalog_id=catalog.id, max_retries=2)
        assert job.status == "failed"
        assert job.last_processed_row == 2
        assert "database went away" in job.last_error

        ImportService.retry(session, job.id)

    job = _reload(session, job.id)
    assert job.status == "completed"
    assert job.retry_count == 1
    assert job.last_error is None
    assert seen == [1, 2, 3, 4, 5]
    assert job.success_count == 5


def test_parallel_strategy_matches_sequential_counts(session, catalog, run_import, monkeypatch):
    monkeypatch.setattr(config, "PARALLEL_WINDOW", 4)
    monkeypatch.setattr(config, "PARALLEL_WORKERS", 3)
    rows = [HEADER] + _rows(10)
    rows[4][1] = ""            # row 4 has no name
    rows[7][2] = "-1"          # row 7 has a negative price

    job, _ = run_import(rows, catalog_id=catalog.id, processing_strategy="parallel")

    assert job.status == "completed"
    assert job.processed_records == 10
    assert job.success_count == 8
    assert job.error_count == 2
    assert job.last_processed_row == 10
    errors = ImportService.list_errors(session, job.id)
    assert [e.row_number for e in errors] == [4, 7]
    assert _product_count(session, catalog.id) == 8


def test_parallel_fatal_row_keeps_only_earlier_rows(session, catalog, run_import, monkeypatch):
    """Rows after a job-fatal row in the same window are not counted."""
    monkeypatch.setattr(config, "PARALLEL_WINDOW", 8)

    def fatal_on_five(self, row):
        if row.row_number == 5:
            raise StorageUnavailable("database went away")
        return REAL_PROCESS(self, row)

    with patch.object(RowProcessor, "process", autospec=True, side_effect=fatal_on_five):
        job, _ = run_import([HEADER] + _rows(8), catalog_id=catalog.id,
                            processing_strategy="parallel")

    assert job.status == "failed"
    assert job.last_processed_row == 4
    assert job.processed_records == 4


def test_missing_source_file_fails_job(session, tmp_path):
    token = uuid.uuid4().hex
    job = ImportJobFactory(status="processing", run_token=token,
                           file_name=str(tmp_path / "gone.csv"))

    status = JobController(job.id, token).run()

    assert status == "failed"
    assert "Cannot open source file" in _reload(session, job.id).last_error


def test_stale_run_token_does_nothing(session, make_csv):
    path = make_csv([HEADER] + _rows(2))
    job = ImportJobFactory(status="processing", run_token="current",
                           file_name=str(path), total_records=2)

    status = JobController(job.id, "superseded").run()

    job = _reload(session, job.id)
    assert status == "processing"
    assert job.processed_records == 0
    assert job.run_token == "current"


def test_attribute_columns_resolved_per_job_catalog(session, run_import):
    size = AttributeFactory(name="Size", values=["S", "M", "L"])
    catalog = CatalogFactory(attributes=[size])

    job, report = run_import(
        [HEADER + ["Size"], ["SKU-1", "Shirt", "10", "S,M"], ["SKU-2", "Hat", "5", "XXL"]],
        catalog_id=catalog.id,
    )

    assert job.success_count == 1
    assert job.error_count == 1
    [error] = ImportService.list_errors(session, job.id)
    assert (error.row_number, error.field) == (2, "Size")
    product = session.scalars(select(Product).where(Product.sku == "SKU-1")).one()
    assert product.selected_values() == {"Size": ["S", "M"]}


def test_parallel_workers_never_overfill_a_catalog(session, run_import, monkeypatch):
    """Concurrent inserts into a catalog with one free slot admit exactly one row."""
    monkeypatch.setattr(config, "PARALLEL_WINDOW", 4)
    monkeypatch.setattr(config, "PARALLEL_WORKERS", 4)
    small = CatalogFactory(capacity=1)

    def slow_create(*args, **kwargs):
        time.sleep(0.05)
        return REAL_CREATE(*args, **kwargs)

    with patch("import_engine.row_processor.CatalogService.create_product",
               side_effect=slow_create):
        job, _ = run_import([HEADER] + _rows(4), catalog_id=small.id,
                            processing_strategy="parallel")

    assert job.status == "completed"
    assert job.success_count == 1
    assert job.error_count == 3
    assert {e.error_type for e in ImportService.list_errors(session, job.id)} == {"capacity"}
    assert _product_count(session, small.id) == 1


def test_parallel_cancel_mid_window_commits_whole_window(session, catalog, make_csv,
                                                         monkeypatch):
    """The in-flight window is recorded; later windows never start."""
    monkeypatch.setattr(config, "PARALLEL_WINDOW", 3)
    monkeypatch.setattr(config, "PARALLEL_WORKERS", 3)
    job = ImportService.create_job(session, "Cancelled parallel", catalog_id=catalog.id,
                                   processing_strategy="parallel")
    session.commit()
    path = make_csv([HEADER] + _rows(7))
    seen = []

    def cancel_on_row_two(self, row):
        result = REAL_PROCESS(self, row)
        seen.append(row.row_number)
        if row.row_number == 2:
            _outside(ImportService.cancel, job.id)
        return result

    with patch.object(RowProcessor, "process", autospec=True,
                      side_effect=cancel_on_row_two):
        with open(path, "rb") as fh:
            ImportService.submit_file(session, job.id, "products.csv", fh)

    job = _reload(session, job.id)
    assert job.status == "cancelled"
    assert sorted(seen) == [1, 2, 3]
    assert job.processed_records == 3
    assert job.processed_records == job.success_count + job.error_count
    assert job.last_processed_row == 3
    assert _product_count(session, catalog.id) == 3


def test_parallel_pause_mid_window_then_resume(session, catalog, make_csv, monkeypatch):
    monkeypatch.setattr(config, "PARALLEL_WINDOW", 3)
    monkeypatch.setattr(config, "PARALLEL_WORKERS", 3)
    job = ImportService.create_job(session, "Paused parallel", catalog_id=catalog.id,
                                   processing_strategy="parallel")
    session.commit()
    path = make_csv([HEADER] + _rows(7))
    seen = []

    def pause_on_row_two(self, row):
        result = REAL_PROCESS(self, row)
        seen.append(row.row_number)
        if row.row_number == 2:
            _outside(ImportService.pause, job.id)
        return result

    with patch.object(RowProcessor, "process", autospec=True,
                      side_effect=pause_on_row_two):
        with open(path, "rb") as fh:
            ImportService.submit_file(session, job.id, "products.csv", fh)

        job = _reload(session, job.id)
        assert job.status == "paused"
        assert job.processed_records == 3
        assert job.processed_records == job.success_count + job.error_count
        assert job.last_processed_row == 3
        assert job.run_token is None

        ImportService.resume(session, job.id)

    job = _reload(session, job.id)
    assert job.status == "completed"
    assert sorted(seen) == [1, 2, 3, 4, 5, 6, 7]
    assert job.processed_records == 7
    assert job.success_count == 7
    assert _product_count(session, catalog.id) == 7


def test_locked_row_is_recorded_and_job_completes(session, catalog, run_import):
    """A lock error on one row does not end the run."""
    def locked_for_sku_two(session_, catalog_id, values, selections=None):
        if values["sku"] == "SKU-2":
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return REAL_CREATE(session_, catalog_id, values, selections)

    with patch("import_engine.row_processor.CatalogService.create_product",
               side_effect=locked_for_sku_two):
        job, _ = run_import([HEADER] + _rows(3), catalog_id=catalog.id)

    assert job.status == "completed"
    assert (job.success_count, job.error_count) == (2, 1)
    [error] = ImportService.list_errors(session, job.id)
    assert (error.row_number, error.error_type) == (2, "persistence")
    assert "database is locked" in error.message


def test_rows_create_their_catalog_and_category_when_job_has_none(session, run_import):
    header = HEADER + ["catalog_name", "category", "category_parent_name"]
    rows = [
        ["SKU-1", "Rake", "12", "Garden", "Tools", "Outdoor"],
        ["SKU-2", "Hoe", "9", "garden", "tools", "Outdoor"],
        ["SKU-3", "Pot", "4", "Garden", "", ""],
    ]

    job, _ = run_import([header] + rows)

    assert job.status == "completed"
    assert job.success_count == 3
    garden = CatalogService.find_catalog(session, "Garden")
    assert _product_count(session, garden.id) == 3
    tools = CatalogService.find_category(session, "Tools")
    outdoor = CatalogService.find_category(session, "Outdoor")
    assert tools.parent_id == outdoor.id
    assert session.scalar(select(func.count(Category.id))) == 2
