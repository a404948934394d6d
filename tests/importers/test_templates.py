import csv
import io
import re
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from import_engine.field_map import SCALAR_FIELDS
from schema.templates import generate_template
from tests.factories import AttributeFactory, CatalogFactory


def _read(tpl):
    return list(csv.reader(io.StringIO(tpl.content.decode("utf-8"))))


def test_catalog_template_has_attribute_column_and_sample(session):
    """A catalog whose only attribute is Size {S, M, L} gets a Size column with S,M,L."""
    size = AttributeFactory(name="Size", values=["S", "M", "L"])
    catalog = CatalogFactory(name="Summer Shirts", attributes=[size])

    tpl = generate_template(catalog.id)
    header, sample = _read(tpl)

    assert "Size" in header
    assert sample[header.index("Size")] == "S,M,L"
    assert header[:len(SCALAR_FIELDS)] == list(SCALAR_FIELDS)
    assert sample[header.index("catalog_id")] == str(catalog.id)
    assert tpl.catalog_name == "Summer Shirts"
    assert re.fullmatch(r"product_upload_template_summer_shirts_\d+\.csv", tpl.filename)


def test_single_select_sample_has_one_value(session):
    material = AttributeFactory(name="Material", is_multi=False, values=["Cotton", "Wool"])
    catalog = CatalogFactory(attributes=[material])

    header, sample = _read(generate_template(catalog.id))

    assert sample[header.index("Material")] == "Cotton"


def test_attribute_without_options_gets_placeholder_values(session):
    catalog = CatalogFactory(attributes=[AttributeFactory(name="Finish")])

    header, sample = _read(generate_template(catalog.id))

    assert sample[header.index("Finish")] == "Value1,Value2,Value3"


def test_catalog_template_excludes_other_attributes(session):
    AttributeFactory(name="Voltage", values=["5V"])
    catalog = CatalogFactory(attributes=[AttributeFactory(name="Size", values=["S"])])

    header, _ = _read(generate_template(catalog.id))

    assert "Size" in header
    assert "Voltage" not in header


def test_generic_template_lists_every_attribute(session):
    AttributeFactory(name="Size", values=["S", "M"])
    AttributeFactory(name="Color", values=["Red"])

    tpl = generate_template()
    rows = _read(tpl)

    assert tpl.generic
    assert rows[0][-2:] == ["Size", "Color"]
    assert len(rows) == 3
    assert re.fullmatch(r"product_upload_template_generic_\d+\.csv", tpl.filename)


def test_unknown_catalog_falls_back_to_generic(session):
    tpl = generate_template(9999)

    assert tpl.generic
    assert "generic" in tpl.filename


def test_catalog_failure_falls_back_to_generic(session):
    catalog = CatalogFactory(attributes=[AttributeFactory(name="Size", values=["S"])])

    with patch("schema.templates.build_catalog_template",
               side_effect=RuntimeError("boom")):
        tpl = generate_template(catalog.id)

    assert tpl.generic
    assert "Size" in _read(tpl)[0]


def test_database_failure_falls_back_to_scalar_columns(session):
    AttributeFactory(name="Size", values=["S"])

    with patch("schema.templates.all_attributes",
               side_effect=OperationalError("SELECT", {}, Exception("down"))):
        tpl = generate_template()

    header = _read(tpl)[0]
    assert tpl.generic
    assert header == list(SCALAR_FIELDS)


def test_custom_value_delimiter_used_in_sample(session, monkeypatch):
    import config
    monkeypatch.setattr(config, "VALUE_DELIMITER", "|")
    catalog = CatalogFactory(attributes=[AttributeFactory(name="Size", values=["S", "M"])])

    header, sample = _read(generate_template(catalog.id))

    assert sample[header.index("Size")] == "S|M"


def test_attribute_clashing_with_scalar_column_gets_prefixed_column(session):
    status = AttributeFactory(name="Status", values=["New", "Sale"])
    catalog = CatalogFactory(attributes=[status])

    header, sample = _read(generate_template(catalog.id))

    assert header.count("status") == 1
    assert "attr_Status" in header
    assert sample[header.index("status")] == "active"
    assert sample[header.index("attr_Status")] == "New,Sale"
