from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import HttpResponseError, ResourceExistsError

import indexer
from settings import Settings


def upload_result(key, succeeded=True, message=None):
    return SimpleNamespace(key=key, succeeded=succeeded, error_message=message, status_code=201 if succeeded else 400)


def echo_upload(documents):
    return [upload_result(d["id"]) for d in documents]


def test_index_schema_fields():
    fields = {f.name: f for f in indexer.index_fields()}
    assert list(fields) == [
        "id", "content", "document_name", "document_url", "page_number", "paragraph_number", "chunk_number",
    ]
    assert fields["id"].key and fields["id"].sortable
    assert fields["content"].searchable
    assert fields["document_name"].filterable and fields["document_name"].sortable
    assert not fields["document_url"].searchable
    assert fields["page_number"].sortable


def test_build_index_semantic_configuration():
    index = indexer.build_index("docs")
    config = index.semantic_search.configurations[0]
    assert config.name == "default"
    assert config.prioritized_fields.content_fields[0].field_name == "content"
    assert indexer.build_index("docs", semantic=False).semantic_search is None


def test_ensure_index_with_semantic_ranking():
    index_client = MagicMock()
    assert indexer.ensure_index(index_client, "docs") is True
    index_client.create_or_update_index.assert_called_once()


def test_ensure_index_falls_back_without_semantic():
    index_client = MagicMock()
    index_client.create_or_update_index.side_effect = [
        HttpResponseError(message="Semantic search is not enabled for this service"),
        None,
    ]
    assert indexer.ensure_index(index_client, "docs") is False
    second = index_client.create_or_update_index.call_args_list[1][0][0]
    assert second.semantic_search is None


def test_ensure_index_other_failures_are_fatal():
    index_client = MagicMock()
    index_client.create_or_update_index.side_effect = HttpResponseError(message="Forbidden")
    with pytest.raises(HttpResponseError):
        indexer.ensure_index(index_client, "docs")
    assert index_client.create_or_update_index.call_count == 1


def test_upload_batch_splits_into_batches_of_100():
    search_client = MagicMock()
    search_client.upload_documents.side_effect = echo_upload
    records = [{"id": str(i)} for i in range(250)]
    outcomes = indexer.upload_batch(search_client, records)
    sizes = [len(c.kwargs["documents"]) for c in search_client.upload_documents.call_args_list]
    assert sizes == [100, 100, 50]
    assert len(outcomes) == 250
    assert all(o.succeeded for o in outcomes)


def test_upload_batch_caps_batch_size():
    search_client = MagicMock()
    search_client.upload_documents.side_effect = echo_upload
    indexer.upload_batch(search_client, [{"id": str(i)} for i in range(150)], batch_size=500)
    assert search_client.upload_documents.call_count == 2


def test_upload_batch_failures_do_not_abort_later_batches():
    search_client = MagicMock()
    search_client.upload_documents.side_effect = [
        [upload_result("a"), upload_result("b", False, "invalid key")],
        [upload_result("c")],
    ]
    outcomes = indexer.upload_batch(search_client, [{"id": "a"}, {"id": "b"}, {"id": "c"}], batch_size=2)
    assert [(o.key, o.succeeded) for o in outcomes] == [("a", True), ("b", False), ("c", True)]
    assert outcomes[1].error_message == "invalid key"


def test_blob_name_for():
    assert indexer.blob_name_for("BKB Bericht 2023.pdf") == "BKB_Bericht_2023.pdf"


def test_index_documents(tmp_path):
    (tmp_path / "bericht.txt").write_text("Die BKB betreibt einen Chatbot. " * 50, encoding="utf-8")
    (tmp_path / "notes.md").write_text("# Notizen\nKurz.", encoding="utf-8")
    (tmp_path / "tabelle.xlsx").write_bytes(b"PK")

    settings = Settings(search_index_name="docs", chunk_size=500, chunk_overlap=100)
    index_client = MagicMock()
    search_client = MagicMock()
    search_client.upload_documents.side_effect = echo_upload
    container = MagicMock()
    container.create_container.side_effect = ResourceExistsError(message="exists")
    container.get_blob_client.return_value.url = "https://storage/documents/file"

    summary = indexer.index_documents(
        settings, index_client, search_client, container=container, documents_dir=str(tmp_path)
    )

    assert summary["ok"] is True
    assert summary["indexed_files"] == 2
    assert summary["skipped_files"] == 1
    assert summary["failed_files"] == 0
    uploaded = [d for c in search_client.upload_documents.call_args_list for d in c.kwargs["documents"]]
    assert summary["chunks"] == len(uploaded)
    assert uploaded[0]["id"] == "bericht_txt_d49f9805_chunk_0"
    assert uploaded[0]["document_url"] == "https://storage/documents/file"
    container.get_blob_client.assert_any_call("bericht.txt")


def test_index_documents_counts_failed_files(tmp_path):
    (tmp_path / "kaputt.pdf").write_bytes(b"not a pdf")
    (tmp_path / "gut.txt").write_text("Inhalt", encoding="utf-8")

    search_client = MagicMock()
    search_client.upload_documents.side_effect = echo_upload
    summary = indexer.index_documents(Settings(), MagicMock(), search_client, documents_dir=str(tmp_path))

    assert summary["ok"] is False
    assert summary["failed_files"] == 1
    assert summary["indexed_files"] == 1


def test_index_documents_creates_missing_directory(tmp_path):
    target = tmp_path / "neu"
    summary = indexer.index_documents(Settings(), MagicMock(), MagicMock(), documents_dir=str(target))
    assert target.is_dir()
    assert summary["indexed_files"] == 0


def test_main_exits_on_missing_env(monkeypatch):
    for name in ("AZURE_SEARCH_ENDPOINT", "AZURE_SEARCH_API_KEY", "AZURE_STORAGE_CONNECTION_STRING"):
        monkeypatch.delenv(name, raising=False)
    with patch("indexer.index_documents") as run:
        assert indexer.main([]) == 1
        run.assert_not_called()
