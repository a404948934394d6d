from sqlalchemy import func, select

from db.models import Catalog, Category
from services.catalog_service import CatalogService
from tests.factories import CatalogFactory, CategoryFactory


def _count(session, model):
    return session.scalar(select(func.count(model.id)))


def test_find_or_create_category_creates_once(session):
    first = CatalogService.find_or_create_category(session, "Shoes")
    session.commit()
    again = CatalogService.find_or_create_category(session, "  shoes ")

    assert again.id == first.id
    assert first.parent_id is None
    assert _count(session, Category) == 1


def test_find_or_create_category_creates_missing_parent(session):
    child = CatalogService.find_or_create_category(session, "Boots", "Shoes")
    session.commit()

    parent = CatalogService.find_category(session, "Shoes")
    assert parent is not None
    assert child.parent_id == parent.id


def test_find_or_create_category_moves_existing_under_parent(session):
    boots = CategoryFactory(name="Boots")
    winter = CategoryFactory(name="Winter")

    found = CatalogService.find_or_create_category(session, "boots", "Winter")
    session.commit()

    assert found.id == boots.id
    assert found.parent_id == winter.id


def test_category_is_never_its_own_parent(session):
    shoes = CatalogService.find_or_create_category(session, "Shoes", "shoes")

    assert shoes.parent_id is None
    assert _count(session, Category) == 1


def test_find_or_create_catalog_reuses_existing(session):
    garden = CatalogFactory(name="Garden", capacity=3)

    found = CatalogService.find_or_create_catalog(session, "GARDEN")

    assert found.id == garden.id
    assert found.capacity == 3


def test_find_or_create_catalog_creates_unlimited_catalog(session):
    created = CatalogService.find_or_create_catalog(session, " Kitchen ")
    session.commit()

    assert created.name == "Kitchen"
    assert created.capacity is None
    assert _count(session, Catalog) == 1
