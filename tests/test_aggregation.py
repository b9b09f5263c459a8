import unittest

from dashboard_backend.aggregation import aggregate_document, coerce_number, group_label
from dashboard_backend.documents import StructuredDocument, rows_to_document

from tests.support import sales_document


class AggregateDocumentTests(unittest.TestCase):
    def test_sum_per_group_in_first_seen_order(self) -> None:
        series = aggregate_document(sales_document(), "Region", "Rev", "sum")

        self.assertEqual(series.points, [{"label": "Asia", "value": 15}, {"label": "EU", "value": 20}])
        self.assertEqual(series.aggregation, "sum")
        self.assertFalse(series.fell_back_to_count)

    def test_avg_is_group_sum_over_group_size(self) -> None:
        series = aggregate_document(sales_document(), "Region", "Rev", "avg")

        self.assertEqual(series.points, [{"label": "Asia", "value": 7.5}, {"label": "EU", "value": 20}])

    def test_count_ignores_metric(self) -> None:
        series = aggregate_document(sales_document(), "Region", "Rev", "count")

        self.assertEqual(series.points, [{"label": "Asia", "value": 2}, {"label": "EU", "value": 1}])

    def test_unknown_metric_reports_count_fallback(self) -> None:
        with self.assertLogs("dashboard.aggregation", level="WARNING"):
            series = aggregate_document(sales_document(), "Region", "Profit", "sum")

        self.assertEqual(series.aggregation, "count")
        self.assertEqual(series.requested_aggregation, "sum")
        self.assertTrue(series.fell_back_to_count)
        self.assertIsNone(series.metric_field)
        self.assertEqual([point["value"] for point in series.points], [2, 1])

    def test_unknown_group_uses_first_field(self) -> None:
        series = aggregate_document(sales_document(), "Country", "Qty", "sum")

        self.assertEqual(series.group_field, "Region")
        self.assertEqual(series.points, [{"label": "Asia", "value": 4}, {"label": "EU", "value": 2}])

    def test_unknown_aggregation_is_count(self) -> None:
        series = aggregate_document(sales_document(), "Region", "Rev", "median")

        self.assertEqual(series.aggregation, "count")

    def test_missing_group_values_are_unknown(self) -> None:
        document = rows_to_document([["Team", "Score", "Note"], [None, 3, "x"], ["A", "4", "y"], ["", "bad", "z"]])

        series = aggregate_document(document, "Team", "Score", "sum")

        self.assertEqual(series.points, [{"label": "Unknown", "value": 3}, {"label": "A", "value": 4}])

    def test_empty_document_gives_empty_series(self) -> None:
        series = aggregate_document(StructuredDocument(), "Region", "Rev", "sum")

        self.assertEqual(series.points, [])


class CoercionTests(unittest.TestCase):
    def test_coerce_number(self) -> None:
        self.assertEqual(coerce_number(None), 0)
        self.assertEqual(coerce_number(True), 1)
        self.assertEqual(coerce_number(" 12.5 "), 12.5)
        self.assertEqual(coerce_number("n/a"), 0)
        self.assertEqual(coerce_number(float("nan")), 0)
        self.assertEqual(coerce_number(float("inf")), 0)

    def test_group_label(self) -> None:
        self.assertEqual(group_label(None), "Unknown")
        self.assertEqual(group_label(2024.0), "2024")
        self.assertEqual(group_label(2.5), "2.5")
        self.assertEqual(group_label("EU"), "EU")


if __name__ == "__main__":
    unittest.main()
