"""Test the document stores."""

import pytest

from genflow.store import (
    EXECUTIONS,
    RECIPES,
    JsonFileDocumentStore,
    MemoryDocumentStore,
    create_store,
)


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryDocumentStore()
    return JsonFileDocumentStore(tmp_path / "data")


def test_put_get_delete(store):
    assert store.get(RECIPES, "r1") is None
    store.put(RECIPES, "r1", {"id": "r1", "nodes": [{"id": "a"}]})
    assert store.get(RECIPES, "r1") == {"id": "r1", "nodes": [{"id": "a"}]}
    assert store.delete(RECIPES, "r1") is True
    assert store.delete(RECIPES, "r1") is False
    assert store.get(RECIPES, "r1") is None


def test_reads_are_copies(store):
    store.put(RECIPES, "r1", {"tags": ["a"]})
    doc = store.get(RECIPES, "r1")
    doc["tags"].append("b")
    assert store.get(RECIPES, "r1") == {"tags": ["a"]}


def test_collections_are_separate(store):
    store.put(RECIPES, "x", {"kind": "recipe"})
    store.put(EXECUTIONS, "x", {"kind": "execution"})
    assert store.get(RECIPES, "x")["kind"] == "recipe"
    assert store.all(EXECUTIONS) == [{"kind": "execution"}]


def test_list_filters(store):
    store.put(EXECUTIONS, "e1", {"id": "e1", "recipeId": "r1", "projectId": "p1"})
    store.put(EXECUTIONS, "e2", {"id": "e2", "recipeId": "r1", "projectId": "p2"})
    store.put(EXECUTIONS, "e3", {"id": "e3", "recipeId": "r2", "projectId": "p1"})
    assert {d["id"] for d in store.list(EXECUTIONS, recipeId="r1")} == {"e1", "e2"}
    assert [d["id"] for d in store.list(EXECUTIONS, recipeId="r1", projectId="p2")] == ["e2"]
    assert store.list(EXECUTIONS, recipeId="r9") == []


def test_non_json_documents_rejected():
    with pytest.raises(TypeError):
        MemoryDocumentStore().put(RECIPES, "r1", {"bad": object()})


def test_json_store_survives_reopen(tmp_path):
    JsonFileDocumentStore(tmp_path).put(RECIPES, "r1", {"id": "r1"})
    reopened = JsonFileDocumentStore(tmp_path)
    assert reopened.get(RECIPES, "r1") == {"id": "r1"}
    assert (tmp_path / RECIPES / "r1.json").exists()


def test_json_store_rejects_path_ids(tmp_path):
    store = JsonFileDocumentStore(tmp_path)
    for bad in ("../escape", "a/b", ".."):
        with pytest.raises(ValueError):
            store.put(RECIPES, bad, {})


def test_create_store(tmp_path):
    assert isinstance(create_store("memory"), MemoryDocumentStore)
    assert isinstance(create_store("json", tmp_path), JsonFileDocumentStore)
    with pytest.raises(ValueError):
        create_store("json")
    with pytest.raises(ValueError):
        create_store("redis", tmp_path)
