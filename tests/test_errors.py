"""Tests for objectcapture/errors.py - error taxonomy and serialization."""

import unittest

from objectcapture.errors import (
    ACKNOWLEDGED,
    ERROR_DEFINITIONS,
    INSUFFICIENT_PHOTOS,
    RECONSTRUCTION_FAILED,
    CancellationError,
    ObjectCaptureError,
    ProcessingError,
    StateError,
    ValidationError,
)


class TestErrors(unittest.TestCase):
    def test_every_kind_has_message_and_suggestion(self):
        for kind, definition in ERROR_DEFINITIONS.items():
            self.assertTrue(definition["message"], kind)
            self.assertTrue(definition["suggestion"], kind)

    def test_to_dict(self):
        error = ValidationError(INSUFFICIENT_PHOTOS, "0 photo(s) in session")
        self.assertEqual(error.to_dict(), {
            "type": "error",
            "category": "ValidationError",
            "errorCode": INSUFFICIENT_PHOTOS,
            "message": "Not enough photos",
            "suggestion": ERROR_DEFINITIONS[INSUFFICIENT_PHOTOS]["suggestion"],
            "detail": "0 photo(s) in session",
        })

    def test_detail_defaults_to_message(self):
        self.assertEqual(ProcessingError(RECONSTRUCTION_FAILED).detail, "3D reconstruction failed")

    def test_unknown_kind_is_tolerated(self):
        error = ProcessingError("ENGINE_ON_FIRE", "smoke")
        self.assertEqual(error.message, "smoke")
        self.assertEqual(error.suggestion, "")

    def test_equality_includes_category(self):
        self.assertEqual(StateError("X", "d"), StateError("X", "d"))
        self.assertNotEqual(StateError("X", "d"), ProcessingError("X", "d"))
        self.assertEqual(len({StateError("X", "d"), StateError("X", "d")}), 1)

    def test_cancellation_is_acknowledged_by_default(self):
        error = CancellationError()
        self.assertEqual(error.kind, ACKNOWLEDGED)
        self.assertIsInstance(error, ObjectCaptureError)
        self.assertIn("CancellationError.ACKNOWLEDGED", str(error))


if __name__ == "__main__":
    unittest.main()
