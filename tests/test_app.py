import base64
import unittest
from unittest.mock import Mock, patch

from fastapi.testclient import TestClient

from dashboard_backend.app import create_app
from dashboard_backend.document_store import DocumentStore
from dashboard_backend.errors import (
    METHOD_NOT_ALLOWED,
    MISSING_ID,
    SERVER_ERROR,
    VALIDATION_ERROR,
    ModelInvocationError,
    StreamNotReadyError,
    WeatherLookupError,
)
from dashboard_backend.history_store import HistoryStore
from dashboard_backend.orchestrator import WidgetAgent
from dashboard_backend.providers import ModelReply, ProviderRegistry
from dashboard_backend.uploads import default_prompt

from tests.support import FakeProvider, make_settings, sales_document, tool_reply


class AppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        settings = make_settings()
        self.gemini = FakeProvider([])
        self.documents = DocumentStore()
        self.history = HistoryStore()
        agent = WidgetAgent(
            settings=settings,
            providers=ProviderRegistry(settings, factories={"gemini": lambda _: self.gemini}),
            history=self.history,
            documents=self.documents,
        )
        self.streams = Mock()
        self.weather = Mock()
        self.client = TestClient(create_app(settings, agent=agent, streams=self.streams, weather=self.weather))


class GenerateWidgetEndpointTests(AppTestCase):
    def test_single_widget_is_returned_as_object(self) -> None:
        self.gemini.replies.append(ModelReply(text="Hello!"))

        response = self.client.post("/api/generate-widget", json={"text": "hi", "conversationId": "c1"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["type"], "chat")

    def test_multiple_widgets_are_returned_as_array(self) -> None:
        self.gemini.replies.append(tool_reply("create_image", text="Here you go.", prompt="forest"))

        response = self.client.post("/api/generate-widget", json={"text": "forest", "conversationId": "c1"})

        self.assertEqual([widget["type"] for widget in response.json()], ["chat", "image"])

    def test_missing_conversation_id(self) -> None:
        response = self.client.post("/api/generate-widget", json={"text": "hi"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["payload"]["code"], MISSING_ID)
        self.assertEqual(self.gemini.calls, [])

    def test_malformed_body_is_validation_error_widget(self) -> None:
        response = self.client.post(
            "/api/generate-widget", json={"text": "hi", "conversationId": "c1", "model": "llama"}
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["type"], "error")
        self.assertEqual(response.json()["payload"]["code"], VALIDATION_ERROR)

    def test_other_methods_are_rejected(self) -> None:
        response = self.client.put("/api/generate-widget", json={})

        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.json()["payload"]["code"], METHOD_NOT_ALLOWED)

    def test_history_get_and_delete(self) -> None:
        self.gemini.replies.append(ModelReply(text="Hello!"))
        self.client.post("/api/generate-widget", json={"text": "hi", "conversationId": "c1"})
        self.documents.put("c1", "sales.csv", sales_document())

        history = self.client.get("/api/generate-widget", params={"conversationId": "c1"}).json()["history"]
        self.assertEqual([(m["role"], m["parts"][0]["text"]) for m in history], [("user", "hi"), ("model", "Hello!")])
        self.assertEqual(self.client.get("/api/conversations").json(), ["c1"])

        response = self.client.delete("/api/generate-widget", params={"conversationId": "c1"})

        self.assertEqual(response.json(), {"ok": True})
        self.assertEqual(self.history.get("c1"), [])
        self.assertEqual(self.documents.filenames("c1"), [])

    def test_history_requires_conversation_id(self) -> None:
        for method in (self.client.get, self.client.delete):
            response = method("/api/generate-widget")

            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["payload"]["code"], MISSING_ID)


class DocUploadEndpointTests(AppTestCase):
    def upload(self, data: bytes, mime_type: str, **extra):
        body = {"base64File": base64.b64encode(data).decode("ascii"), "fileName": "upload", "mimeType": mime_type}
        body.update(extra)
        return self.client.post("/api/doc-upload", json=body)

    def test_csv_is_parsed_and_summarized(self) -> None:
        response = self.upload(b"Region,Rev,Qty\nAsia,10,1\nEU,20,2\n", "text/csv")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["summary"], "42 rows")
        self.assertEqual(body["fields"], ["Region", "Rev", "Qty"])
        self.assertEqual(body["rowCount"], 2)
        self.assertEqual(body["preview"][0]["Region"], "Asia")
        (prompt,) = self.gemini.text_prompts
        self.assertTrue(prompt.startswith("Summarize this document."))
        self.assertIn("EU", prompt)

    def test_other_files_get_instruction_only(self) -> None:
        response = self.upload(b"\x89PNG", "image/png", prompt="What is shown?")

        self.assertEqual(response.json(), {"filename": "upload", "summary": "42 rows"})
        self.assertTrue(self.gemini.text_prompts[0].startswith("What is shown?"))

    def test_default_instruction_by_mime_type(self) -> None:
        self.assertEqual(default_prompt("image/jpeg"), "Describe this image.")
        self.assertEqual(default_prompt("audio/mpeg"), "Transcribe this audio.")
        self.assertEqual(default_prompt("video/mp4"), "Summarize this video.")
        self.assertEqual(default_prompt("application/pdf"), "Summarize this document.")
        self.assertEqual(default_prompt("application/zip"), "Analyze this file.")

    def test_missing_file_data(self) -> None:
        response = self.client.post("/api/doc-upload", json={"fileName": "a.csv", "mimeType": "text/csv"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["payload"]["code"], VALIDATION_ERROR)
        self.assertEqual(self.gemini.text_prompts, [])

    def test_oversized_file_is_rejected(self) -> None:
        with patch("dashboard_backend.uploads.MAX_INLINE_BYTES", 3):
            response = self.upload(b"%PDF-1.7", "application/pdf")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["payload"]["code"], VALIDATION_ERROR)
        self.assertEqual(self.gemini.text_prompts, [])

    def test_model_failure_is_server_error(self) -> None:
        self.gemini.generate_text = Mock(side_effect=ModelInvocationError("quota exceeded"))

        response = self.upload(b"Region,Rev,Qty\nAsia,10,1\n", "text/csv")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["payload"]["code"], SERVER_ERROR)

    def test_other_methods_are_rejected(self) -> None:
        response = self.client.get("/api/doc-upload")

        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.json()["payload"]["code"], METHOD_NOT_ALLOWED)


class WeatherEndpointTests(AppTestCase):
    def test_city_lookup(self) -> None:
        self.weather.geocode_city.return_value = (52.52, 13.4)
        self.weather.get_weather.return_value = {
            "description": "clear sky",
            "icon": "01d",
            "temp": {"current": 20.0, "min": 18.0, "max": 22.0},
            "coordinates": [52.52, 13.4],
        }

        response = self.client.post("/api/get-weather", json={"city": "Berlin"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["location"], "Berlin")
        self.weather.get_weather.assert_called_once_with(52.52, 13.4)

    def test_lookup_failure(self) -> None:
        self.weather.geocode_city.side_effect = WeatherLookupError("No coordinates found for Atlantis")

        response = self.client.post("/api/get-weather", json={"city": "Atlantis"})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["payload"]["code"], SERVER_ERROR)

    def test_requires_city_or_coordinates(self) -> None:
        response = self.client.post("/api/get-weather", json={"lat": 1.0})

        self.assertEqual(response.status_code, 400)


class StreamEndpointTests(AppTestCase):
    def test_start_stream(self) -> None:
        self.streams.start_stream.return_value = {
            "path": "stream_1",
            "protocol": "hls",
            "url": "http://hls.test:8888/stream_1/index.m3u8",
        }

        response = self.client.post("/api/start-stream", json={"rtspUrl": "rtsp://cam/1", "protocol": "hls"})

        self.assertEqual(response.json()["url"], "http://hls.test:8888/stream_1/index.m3u8")
        self.streams.start_stream.assert_called_once_with("rtsp://cam/1", "hls")

    def test_start_stream_timeout(self) -> None:
        self.streams.start_stream.side_effect = StreamNotReadyError("Stream not ready after 10s")

        response = self.client.post("/api/start-stream", json={"rtspUrl": "rtsp://cam/1"})

        self.assertEqual(response.status_code, 504)

    def test_start_stream_bad_protocol(self) -> None:
        self.streams.start_stream.side_effect = ValueError("protocol must be 'hls' or 'webrtc'")

        response = self.client.post("/api/start-stream", json={"rtspUrl": "rtsp://cam/1", "protocol": "rtmp"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["payload"]["code"], VALIDATION_ERROR)

    def test_stop_and_list(self) -> None:
        self.streams.stop_stream.return_value = {"success": True}
        self.streams.list_active_paths.return_value = {
            "itemCount": 1,
            "pageCount": 1,
            "items": [{"name": "stream_1", "ready": True}],
        }

        self.assertEqual(self.client.post("/api/stop-stream", json={"path": "stream_1"}).json(), {"success": True})
        listing = self.client.get("/api/list-paths").json()

        self.assertEqual(listing["itemCount"], 1)
        self.assertEqual(listing["items"][0]["name"], "stream_1")


if __name__ == "__main__":
    unittest.main()
