import json
import unittest

from dashboard_backend.errors import SERVER_ERROR, WidgetValidationError
from dashboard_backend.widgets import (
    ChartWidget,
    LayoutCursor,
    chat_widget,
    error_widget,
    validate_widget,
    widget_text,
    widget_to_dict,
)


def _layout(widget_id: str = "w1") -> dict:
    return {"i": widget_id, "x": 0, "y": 0, "w": 6, "h": 6}


def _chart(**payload_overrides) -> dict:
    payload = {"title": "Revenue", "data": [{"label": "Q1", "value": 10}], "source": "gemini"}
    payload.update(payload_overrides)
    return {"id": "w1", "type": "bar", "layout": _layout(), "payload": payload}


class ValidateWidgetTests(unittest.TestCase):
    def test_valid_chart(self) -> None:
        widget = validate_widget(_chart())

        self.assertIsInstance(widget, ChartWidget)
        self.assertEqual(widget.payload.data[0].value, 10)

    def test_cross_variant_field_is_rejected(self) -> None:
        with self.assertRaises(WidgetValidationError):
            validate_widget(_chart(src="https://example.com/a.png"))

    def test_non_finite_value_is_rejected(self) -> None:
        with self.assertRaises(WidgetValidationError):
            validate_widget(_chart(data=[{"label": "Q1", "value": float("nan")}]))

    def test_unknown_type_is_rejected(self) -> None:
        candidate = _chart()
        candidate["type"] = "radar"

        with self.assertRaises(WidgetValidationError):
            validate_widget(candidate)

    def test_map_needs_two_points_in_range(self) -> None:
        point = {"name": "Paris", "coordinates": [48.85, 2.35]}
        too_few = {"id": "m", "type": "map", "layout": _layout("m"), "payload": {"title": "Map", "data": [point]}}
        out_of_range = {
            "id": "m",
            "type": "map",
            "layout": _layout("m"),
            "payload": {"title": "Map", "data": [point, {"name": "Bad", "coordinates": [200, 0]}]},
        }

        with self.assertRaises(WidgetValidationError):
            validate_widget(too_few)
        with self.assertRaises(WidgetValidationError):
            validate_widget(out_of_range)

    def test_media_urls(self) -> None:
        image = {"id": "i", "type": "image", "layout": _layout("i"), "payload": {"src": "http://x.test/a.png", "title": "t"}}
        video = {"id": "v", "type": "video", "layout": _layout("v"), "payload": {"src": "https://x.test/watch", "title": "t"}}
        good_video = {"id": "v", "type": "video", "layout": _layout("v"), "payload": {"src": "https://x.test/clip.MP4", "title": "t"}}

        with self.assertRaises(WidgetValidationError):
            validate_widget(image)
        with self.assertRaises(WidgetValidationError):
            validate_widget(video)
        self.assertEqual(validate_widget(good_video).payload.src, "https://x.test/clip.MP4")

    def test_weather_accepts_current_or_pair(self) -> None:
        current = {"id": "w", "type": "weather", "layout": _layout("w"), "payload": {"coordinates": "current"}}
        pair = {"id": "w", "type": "weather", "layout": _layout("w"), "payload": {"coordinates": [1.5, 2.5]}}

        self.assertEqual(validate_widget(current).payload.coordinates, "current")
        self.assertEqual(validate_widget(pair).payload.coordinates, (1.5, 2.5))

    def test_serialize_validate_round_trip_is_stable(self) -> None:
        document = {
            "id": "d",
            "type": "document",
            "layout": {"i": "d", "x": 0, "y": 0, "w": 6, "h": 8, "minW": 2},
            "payload": {"filename": "a.csv", "fields": ["a"], "rowCount": 1, "preview": [{"a": "x"}], "summary": "ok"},
        }

        first = widget_to_dict(validate_widget(document))
        second = widget_to_dict(validate_widget(json.loads(json.dumps(first))))

        self.assertEqual(first, second)
        self.assertEqual(first["payload"]["rowCount"], 1)
        self.assertEqual(first["layout"]["minW"], 2)


class WidgetHelperTests(unittest.TestCase):
    def test_error_widget_keeps_code_vocabulary(self) -> None:
        widget = error_widget("boom", code="TEAPOT")

        self.assertEqual(widget["type"], "error")
        self.assertEqual(widget["payload"], {"message": "boom", "code": SERVER_ERROR})
        self.assertEqual((widget["layout"]["w"], widget["layout"]["h"]), (4, 3))

    def test_chat_widget_text(self) -> None:
        widget = chat_widget("hello")

        self.assertEqual(widget_text(widget), "hello")
        self.assertIsNone(widget_text(error_widget("x")))

    def test_layout_cursor_wraps_rows(self) -> None:
        cursor = LayoutCursor()

        first = cursor.place("a", 10, 4)
        second = cursor.place("b", 10, 4)
        third = cursor.place("c", 10, 3)

        self.assertEqual((first["x"], first["y"]), (0, 0))
        self.assertEqual((second["x"], second["y"]), (10, 0))
        self.assertEqual((third["x"], third["y"]), (0, 4))


if __name__ == "__main__":
    unittest.main()
