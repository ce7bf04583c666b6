import unittest

from chatsync.validators import (
    MAX_MESSAGE_LENGTH,
    ValidationError,
    validate_email,
    validate_full_name,
    validate_message,
    validate_username,
)


class ValidatorTests(unittest.TestCase):
    def test_message(self):
        self.assertEqual(validate_message("  hi  "), "hi")
        self.assertEqual(len(validate_message("x" * MAX_MESSAGE_LENGTH)), MAX_MESSAGE_LENGTH)
        for bad in (None, "", "   ", "x" * (MAX_MESSAGE_LENGTH + 1)):
            with self.assertRaises(ValidationError):
                validate_message(bad)

    def test_username(self):
        self.assertEqual(validate_username("alice_01"), "alice_01")
        for bad in (None, "ab", "a" * 21, "alice!"):
            with self.assertRaises(ValidationError):
                validate_username(bad)

    def test_email(self):
        self.assertEqual(validate_email("alice@example.com"), "alice@example.com")
        for bad in ("", "alice", "alice@", "alice@example"):
            with self.assertRaises(ValidationError):
                validate_email(bad)

    def test_full_name(self):
        self.assertEqual(validate_full_name("Al"), "Al")
        for bad in ("", "A", "x" * 51):
            with self.assertRaises(ValidationError):
                validate_full_name(bad)


if __name__ == "__main__":
    unittest.main()
