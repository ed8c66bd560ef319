import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from app import app
from chat import ChatReply
from citations import Citation
from errors import TokenBudgetExceeded
from prompting import NO_INFORMATION_REPLY, RATE_LIMIT_REPLY, TOO_LARGE_REPLY
from retriever import Retriever
from settings import Settings
from tests.fakes import FakeIndexClient, FakeSearchClient, rate_limit_error, search_error

client = TestClient(app)

BKB_HIT = {"content": "Die BKB betreibt einen Chatbot." * 10, "document_name": "Report", "page_number": 4}


class TestAPI(unittest.TestCase):
    def setUp(self):
        # Patch services so no Azure client is ever built
        self.service = MagicMock()
        self.service.answer = AsyncMock()
        self.search = FakeSearchClient([BKB_HIT])
        self.retriever = Retriever(self.search, "docs")

        self.patcher_service = patch('app.chat_service', self.service)
        self.patcher_service.start()
        self.patcher_retriever = patch('app.retriever', self.retriever)
        self.patcher_retriever.start()

    def tearDown(self):
        self.patcher_service.stop()
        self.patcher_retriever.stop()

    def test_health(self):
        response = client.get("/health")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["status"], "ok")
        self.assertTrue(data["timestamp"].endswith("Z"))

    def test_index_page(self):
        response = client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn("/api/chat", response.text)

    def test_chat_happy_path(self):
        self.service.answer.return_value = ChatReply(
            reply="Die BKB betreibt einen Chatbot. (Quelle: Report, Seite 4)",
            sources=[Citation("Report", 4)],
        )
        response = client.post("/api/chat", json={"message": "  Was macht die BKB?  "})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {
            "reply": "Die BKB betreibt einen Chatbot. (Quelle: Report, Seite 4)",
            "sources": [{"document": "Report", "page": 4}],
        })
        self.service.answer.assert_awaited_once_with("Was macht die BKB?")

    def test_chat_no_information(self):
        self.service.answer.return_value = ChatReply(reply=NO_INFORMATION_REPLY)
        response = client.post("/api/chat", json={"message": "Was macht die BKB?"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"reply": NO_INFORMATION_REPLY, "sources": []})

    def test_chat_requires_message(self):
        for payload in ({}, {"message": ""}, {"message": "   "}):
            response = client.post("/api/chat", json=payload)
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json(), {"error": "Message is required"})
        response = client.post("/api/chat")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "Message is required"})
        self.service.answer.assert_not_called()

    def test_chat_token_budget_exceeded(self):
        self.service.answer.side_effect = TokenBudgetExceeded(20000, 15000)
        response = client.post("/api/chat", json={"message": "Alles über alle Berichte"})
        self.assertEqual(response.status_code, 413)
        data = response.json()
        self.assertEqual(data["reply"], TOO_LARGE_REPLY)
        self.assertIn("retry_suggestion", data)

    def test_chat_rate_limit(self):
        self.service.answer.side_effect = rate_limit_error()
        response = client.post("/api/chat", json={"message": "Frage"})
        self.assertEqual(response.status_code, 429)
        data = response.json()
        self.assertEqual(data["reply"], RATE_LIMIT_REPLY)
        self.assertEqual(data["retry_after"], "5 minutes")

    def test_chat_other_failure(self):
        self.service.answer.side_effect = RuntimeError("deployment not found")
        response = client.post("/api/chat", json={"message": "Frage"})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["details"], "deployment not found")

    def test_test_search(self):
        response = client.get("/api/test-search", params={"q": "BKB"})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["query"], "BKB")
        self.assertEqual(data["documentCount"], 1)
        doc = data["documents"][0]
        self.assertEqual((doc["name"], doc["page"]), ("Report", 4))
        self.assertEqual(len(doc["preview"]), 203)
        self.assertEqual(self.search.calls[0]["search_text"], "BKB")

    def test_search_config_masks_key(self):
        cfg = Settings(search_endpoint="https://search.example.net", search_api_key="abcd1234secretwxyz")
        with patch('app.settings', cfg):
            response = client.get("/api/debug/search-config")
        data = response.json()
        self.assertEqual(data["keyPreview"], "abcd...wxyz")
        self.assertTrue(data["keyPresent"])
        self.assertNotIn("abcd1234secretwxyz", response.text)

    def test_index_structure(self):
        response = client.get("/api/debug/index-structure")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["fieldNames"], ["content", "document_name", "page_number"])

    def test_index_structure_failure(self):
        with patch('app.retriever', Retriever(FakeSearchClient(search_error()), "docs")):
            response = client.get("/api/debug/index-structure")
        self.assertEqual(response.status_code, 500)
        self.assertFalse(response.json()["isConnected"])

    def test_field_mapping_update(self):
        asyncio.run(self.retriever.load_schema(FakeIndexClient(["id", "body", "title", "page_number"])))
        response = client.post("/api/config/field-mapping", json={"contentField": "body", "titleField": "title"})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["success"])
        self.assertEqual(data["mapping"], {"contentField": "body", "titleField": "title", "pageField": "page_number"})

        client.get("/api/test-search", params={"q": "BKB"})
        self.assertEqual(self.search.calls[-1]["select"], ["body", "title", "page_number"])

    def test_field_mapping_unknown_field(self):
        asyncio.run(self.retriever.load_schema(FakeIndexClient(["id", "content", "title"])))
        response = client.post("/api/config/field-mapping", json={"contentField": "chunk_text"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("chunk_text", response.json()["error"])
        self.assertEqual(self.retriever.resolved_fields.content, "content")

    def test_field_mapping_requires_content_field(self):
        response = client.post("/api/config/field-mapping", json={"titleField": "title"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"error": "contentField ist erforderlich"})


if __name__ == "__main__":
    unittest.main()
