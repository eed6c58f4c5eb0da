"""
Tests for registry-based event dispatch
"""
import unittest

from common.error_handling import InvariantViolationError, UnmatchedReferenceError
from webhook_service.dispatcher import EventDispatcher


class TestEventDispatcher(unittest.TestCase):

    def setUp(self):
        self.dispatcher = EventDispatcher()

    def test_registered_handler_runs(self):
        calls = []

        @self.dispatcher.register("paystack", "charge.success")
        def on_charge(provider, payload):
            calls.append((provider, payload))
            return "settled"

        result = self.dispatcher.dispatch("paystack", "charge.success", {"data": {}})
        self.assertEqual(calls, [("paystack", {"data": {}})])
        self.assertEqual(result.status, "processed")
        self.assertEqual(result.outcome, "processed")
        self.assertEqual(result.note, "settled")

    def test_handlers_keyed_by_provider_and_type(self):
        self.dispatcher.register("paystack", "charge.success")(lambda p, d: "paystack")
        self.dispatcher.register("stripe", "charge.success")(lambda p, d: "stripe")
        self.assertEqual(self.dispatcher.dispatch("stripe", "charge.success", {}).note, "stripe")
        self.assertEqual(self.dispatcher.registered(), [("paystack", "charge.success"), ("stripe", "charge.success")])

    def test_unregistered_event_is_processed_noop(self):
        """Test that unknown event types are acknowledged without running anything"""
        result = self.dispatcher.dispatch("paystack", "customeridentification.success", {})
        self.assertEqual(result.status, "processed")
        self.assertEqual(result.outcome, "ignored")
        self.assertFalse(result.handled)

    def test_business_error_is_processed_with_note(self):
        def handler(provider, payload):
            raise UnmatchedReferenceError(provider, "REF_X")

        self.dispatcher.register("paystack", "transfer.success")(handler)
        result = self.dispatcher.dispatch("paystack", "transfer.success", {})
        self.assertEqual(result.status, "processed")
        self.assertIn("REF_X", result.note)
        self.assertIsNone(result.error)

    def test_invariant_violation_fails_event(self):
        def handler(provider, payload):
            raise InvariantViolationError("would go negative")

        self.dispatcher.register("paystack", "charge.success")(handler)
        result = self.dispatcher.dispatch("paystack", "charge.success", {})
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.error, "would go negative")
        self.assertFalse(result.unexpected)

    def test_unexpected_error_fails_event(self):
        def handler(provider, payload):
            raise KeyError("data")

        self.dispatcher.register("stripe", "payout.paid")(handler)
        result = self.dispatcher.dispatch("stripe", "payout.paid", {})
        self.assertEqual(result.status, "failed")
        self.assertTrue(result.unexpected)
        self.assertIn("KeyError", result.error)


if __name__ == "__main__":
    unittest.main()
