import csv

import pytest

import config
from db import init_db, get_session
from tests import factories


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'marketplace-test.sqlite'}"


@pytest.fixture(autouse=True)
def _isolated_storage(tmp_path, db_url, monkeypatch):
    """Fresh SQLite database and upload directory for every test."""
    monkeypatch.setattr(config, "UPLOAD_DIR", tmp_path / "uploads")
    monkeypatch.setattr(config, "LEASE_SECONDS", 300)
    init_db(db_url)
    yield


@pytest.fixture(autouse=True)
def _eager_celery():
    """Run import jobs inline, the same way the app does without a broker."""
    from worker import celery_app
    celery_app.conf.task_always_eager = True
    celery_app.conf.task_eager_propagates = True
    yield


@pytest.fixture
def session():
    """Session shared by the factories and the test body."""
    s = get_session()
    factories.bind(s)
    yield s
    s.close()


@pytest.fixture
def app(db_url):
    from main import create_app
    application = create_app(db_url, recover=False)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    """Return a Flask test client."""
    return app.test_client()


@pytest.fixture
def make_csv(tmp_path):
    """Write rows to a CSV file and return its path."""
    counter = {"n": 0}

    def _make(rows, name=None):
        counter["n"] += 1
        path = tmp_path / (name or f"products_{counter['n']}.csv")
        with open(path, "w", newline="", encoding="utf-8") as fh:
            csv.writer(fh).writerows(rows)
        return path

    return _make


@pytest.fixture
def run_import(session, make_csv):
    """Create a job, submit rows to it (runs inline) and return (job, report)."""
    from services.import_service import ImportService

    def _run(rows, name="Test import", filename="products.csv", **job_kwargs):
        job = ImportService.create_job(session, name, **job_kwargs)
        session.commit()
        path = make_csv(rows)
        with open(path, "rb") as fh:
            report = ImportService.submit_file(session, job.id, filename, fh)
        session.expire_all()
        return ImportService.get_job(session, job.id), report

    return _run
