"""End-to-end behaviour of the resource services over the in-memory store."""

import pytest
from bson import ObjectId

from errors import StorageError
from service import build_services
from storage import MemoryStorage


@pytest.fixture
def posts(storage):
    ids = []
    for i, status in enumerate(["A", "D", "A", "D", "I"]):
        ids.append(storage.insert("posts", {
            "title": f"Post {i}", "brief": "b", "body": "c",
            "uploadDatetime": 1608344981000 + i, "status": status,
        }))
    return ids


@pytest.fixture
def products(services, taxonomy):
    svc = services["product"]
    names = ["FOOD jacket", "Running top", "Slim shirt", "Deleted top"]
    subs = [taxonomy["s1"], taxonomy["s1"], taxonomy["s2"], taxonomy["s1"]]
    ids = []
    for name, sub in zip(names, subs):
        env = svc.create({"name": name, "subcategory": {"_id": str(sub)}})
        assert env.success, env.body
        ids.append(env.body["product"]["_id"])
    svc.soft_delete(ids[-1])
    return ids


class TestListing:
    def test_page_and_total(self, services, posts):
        env = services["post"].list({"from": "0", "limit": "2"})
        assert env.success
        assert env.body["total"] == 3
        assert len(env.body["posts"]) == 2
        assert all(p["status"] != "D" for p in env.body["posts"])

    def test_newest_first_by_default(self, services, posts):
        titles = [p["title"] for p in services["post"].list().body["posts"]]
        assert titles == ["Post 4", "Post 2", "Post 0"]

    @pytest.mark.parametrize("params", [
        {},
        {"limit": "1"},
        {"from": "1", "limit": "1"},
        {"from": "2"},
        {"from": "50", "limit": "10"},
        {"limit": "0"},
    ])
    def test_total_ignores_pagination(self, services, posts, params):
        env = services["post"].list(params)
        assert env.body["total"] == 3

    def test_offset_beyond_results(self, services, posts):
        env = services["post"].list({"from": "10"})
        assert env.body == {"success": True, "total": 3, "posts": []}

    def test_deleted_never_listed(self, services, products):
        body = services["product"].list().body
        assert body["total"] == 3
        assert "Deleted top" not in [p["name"] for p in body["products"]]

    def test_sample(self, services, posts):
        env = services["post"].list({"sample": "2"})
        assert env.body["total"] == 3
        assert len(env.body["posts"]) == 2
        assert {p["status"] for p in env.body["posts"]} <= {"A", "I"}

    def test_ids_are_serialized(self, services, products):
        product = services["product"].list({"limit": "1"}).body["products"][0]
        assert isinstance(product["_id"], str)
        assert isinstance(product["subcategory"]["category"]["_id"], str)


class TestSearch:
    def test_case_insensitive(self, services, products):
        env = services["product"].search("food")
        assert env.success
        assert [p["name"] for p in env.body["products"]] == ["FOOD jacket"]
        assert env.body["total"] == 1

    def test_deleted_not_found(self, services, products):
        assert services["product"].search("Deleted").body["total"] == 0

    def test_special_characters_are_literal(self, services, products):
        assert services["product"].search(".*").body["total"] == 0

    def test_search_with_pagination(self, services, products):
        env = services["product"].search("t", {"limit": "1"})
        assert env.body["total"] == 3
        assert len(env.body["products"]) == 1


class TestFilters:
    def test_by_category(self, services, products, taxonomy):
        env = services["product"].list({"category": str(taxonomy["c1"])})
        assert sorted(p["name"] for p in env.body["products"]) == ["FOOD jacket", "Running top"]
        assert env.body["total"] == 2

    def test_by_subcategory(self, services, products, taxonomy):
        env = services["product"].list({"subcategory": str(taxonomy["s2"])})
        assert [p["name"] for p in env.body["products"]] == ["Slim shirt"]

    def test_category_without_products(self, services, products, storage):
        empty = storage.insert("categories", {"name": "Empty", "status": "A"})
        storage.insert("subcategories", {"name": "Nothing", "category": empty, "status": "A"})
        env = services["product"].list({"category": str(empty)})
        assert env.body == {"success": True, "total": 0, "products": []}

    def test_unknown_filter_envelope(self, services, products):
        env = services["product"].list({"colour": "red"})
        assert env.status_code == 400
        assert env.body["success"] is False
        assert env.body["error"]["type"] == "InvalidFilterError"
        assert "products" not in env.body

    def test_malformed_pagination_envelope(self, services):
        env = services["post"].list({"limit": "-1"})
        assert not env.success
        assert env.body["error"]["type"] == "InvalidFilterError"


class TestRelations:
    def test_product_category_round_trip(self, services, taxonomy):
        env = services["product"].create({"name": "T-Shirt", "subcategory": {"_id": str(taxonomy["s1"])}})
        product = services["product"].get_by_id(env.body["product"]["_id"]).body["product"]
        category = services["category"].get_by_id(str(taxonomy["c1"])).body["category"]
        assert product["subcategory"]["_id"] == str(taxonomy["s1"])
        assert product["subcategory"]["category"] == category

    def test_dangling_relation_is_null(self, services, storage):
        oid = storage.insert("products", {"name": "orphan", "subcategory": ObjectId(), "status": "A"})
        env = services["product"].get_by_id(str(oid))
        assert env.success
        assert env.body["product"]["subcategory"] is None
        assert env.body["product"]["addedBy"] is None

    def test_dangling_nested_relation_is_null(self, services, storage):
        sub = storage.insert("subcategories", {"name": "lost", "category": ObjectId(), "status": "A"})
        oid = storage.insert("products", {"name": "p", "subcategory": sub, "status": "A"})
        product = services["product"].get_by_id(oid).body["product"]
        assert product["subcategory"]["name"] == "lost"
        assert product["subcategory"]["category"] is None

    def test_passwords_never_leak(self, services, actor, taxonomy):
        services["product"].create({"name": "p", "subcategory": str(taxonomy["s1"])}, actor=str(actor))
        product = services["product"].list().body["products"][0]
        assert product["addedBy"]["email"] == "jhony@mail.com"
        assert "password" not in product["addedBy"]
        assert all("password" not in u for u in services["user"].list().body["users"])
        assert "password" not in services["user"].search("jho").body["users"][0]


class TestLifecycleEnvelopes:
    def test_get_by_id_not_found(self, services):
        env = services["post"].get_by_id(str(ObjectId()))
        assert env.status_code == 404
        assert env.body["success"] is False
        assert env.body["message"] == "Error while waiting the post from database"
        assert env.body["error"]["type"] == "NotFoundError"

    def test_create_validation_error(self, services):
        env = services["category"].create({})
        assert env.status_code == 400
        assert env.body["error"]["type"] == "ValidationError"
        assert env.body["message"] == "Error saving the category"

    def test_soft_delete_twice(self, services, posts):
        first = services["post"].soft_delete(str(posts[0]))
        second = services["post"].soft_delete(str(posts[0]))
        assert first.success and second.success
        assert first.body["post"]["status"] == second.body["post"]["status"] == "D"

    def test_toggle_twice(self, services, posts):
        svc = services["post"]
        assert svc.toggle_status(str(posts[4])).body["post"]["status"] == "A"
        assert svc.toggle_status(str(posts[4])).body["post"]["status"] == "I"
        assert svc.toggle_status(str(posts[1])).body["post"]["status"] == "D"

    def test_update_keeps_status(self, services, posts):
        env = services["post"].update(str(posts[4]), {"status": "A", "title": "Edited"})
        assert env.body["post"]["status"] == "I"
        assert env.body["post"]["title"] == "Edited"


class _FailingStorage(MemoryStorage):
    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def count(self, collection, pipeline):
        if self.fail_on == "count":
            raise StorageError("connection refused")
        return super().count(collection, pipeline)

    def find_page(self, collection, pipeline):
        if self.fail_on == "page":
            raise StorageError("connection reset")
        return super().find_page(collection, pipeline)


class TestStorageFailures:
    @pytest.mark.parametrize("fail_on", ["count", "page"])
    def test_either_half_fails_the_whole_listing(self, registry, orphans, fail_on):
        storage = _FailingStorage(fail_on)
        storage.insert("posts", {"title": "t", "brief": "b", "body": "c", "status": "A"})
        env = build_services(registry, storage, orphans)["post"].list()
        assert env.status_code == 503
        assert env.body["success"] is False
        assert env.body["error"]["retryable"] is True
        assert "total" not in env.body
        assert "posts" not in env.body


class _ReadsFailAfterWrite(MemoryStorage):
    """Writes commit, then every aggregation fails."""

    def __init__(self):
        super().__init__()
        self.written = False

    def insert(self, collection, doc):
        oid = super().insert(collection, doc)
        self.written = True
        return oid

    def update_by_id(self, collection, id, patch):
        doc = super().update_by_id(collection, id, patch)
        self.written = True
        return doc

    def find_page(self, collection, pipeline):
        if self.written:
            raise StorageError("connection reset")
        return super().find_page(collection, pipeline)


class TestCommittedWrites:
    @pytest.fixture
    def flaky(self, registry, orphans):
        storage = _ReadsFailAfterWrite()
        return storage, build_services(registry, storage, orphans)

    def test_soft_delete_reports_success(self, flaky):
        storage, services = flaky
        oid = storage.insert("posts", {"title": "t", "brief": "b", "body": "c", "status": "A"})
        storage.written = False
        env = services["post"].soft_delete(str(oid))
        assert env.success
        assert env.body["post"]["status"] == "D"
        assert env.body["post"]["_id"] == str(oid)
        assert storage.find_by_id("posts", oid)["status"] == "D"

    def test_toggle_reports_success(self, flaky):
        storage, services = flaky
        oid = storage.insert("categories", {"name": "Jogging", "status": "A"})
        storage.written = False
        env = services["category"].toggle_status(str(oid))
        assert env.success
        assert env.body["category"]["status"] == "I"

    def test_update_keeps_relations_as_ids(self, flaky):
        storage, services = flaky
        cat = storage.insert("categories", {"name": "Jogging", "status": "A"})
        sub = storage.insert("subcategories", {"name": "Top", "category": cat, "status": "A"})
        storage.written = False
        env = services["subcategory"].update(str(sub), {"name": "Tops"})
        assert env.success
        assert env.body["subcategory"]["name"] == "Tops"
        assert env.body["subcategory"]["category"] == str(cat)

    def test_create_hides_password(self, flaky):
        storage, services = flaky
        env = services["user"].create({"name": "Ana", "email": "ana@mail.com", "password": "123456"})
        assert env.success
        assert env.body["user"]["email"] == "ana@mail.com"
        assert "password" not in env.body["user"]

    def test_read_failure_without_a_write_is_reported(self, flaky):
        storage, services = flaky
        oid = storage.insert("posts", {"title": "t", "brief": "b", "body": "c", "status": "D"})
        env = services["post"].soft_delete(str(oid))
        assert env.status_code == 503
        assert env.body["error"]["retryable"] is True
