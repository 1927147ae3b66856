import unittest
from unittest.mock import MagicMock, patch

from automate_chat.errors import IdentityUnavailable
from automate_chat.models import Conversation, LastMessage, User
from scripts import check_latest_chat


class TestCheckLatestChat(unittest.TestCase):
    def _run(self, argv, conversations=None, user=None):
        service = MagicMock()
        service.list_conversations.return_value = conversations or []
        printed = []
        with patch("sys.argv", ["check_latest_chat.py", *argv]), patch.object(
            check_latest_chat, "build_service", return_value=service
        ), patch.object(
            check_latest_chat,
            "get_current_user",
            side_effect=[user] if user else IdentityUnavailable("missing"),
        ), patch("builtins.print", side_effect=lambda *args: printed.append(" ".join(map(str, args)))):
            code = check_latest_chat.main()
        return code, printed, service

    def test_prints_latest_conversation(self):
        latest = Conversation(
            id="c1",
            participants=["u1", "u2"],
            participant_names={"u2": "Alex"},
            last_message=LastMessage(content="", sender="u2", has_image=True),
            last_message_timestamp="2024-05-01T10:00:00.000Z",
            vehicle_id="veh-9",
        )

        code, printed, service = self._run([], [latest], user=User("u1", "Sam"))

        self.assertEqual(code, 0)
        service.list_conversations.assert_called_once_with("u1")
        self.assertIn("Conversation with: Alex", printed)
        self.assertIn("Conversation ID: c1", printed)
        self.assertIn("Last activity (UTC): 2024-05-01T10:00:00+00:00", printed)
        self.assertIn("Vehicle: veh-9", printed)
        self.assertIn("Last author: u2", printed)
        self.assertEqual(printed[-1], "Sent an image")

    def test_user_id_argument_skips_identity_lookup(self):
        code, printed, service = self._run(["--user-id", "u9"])

        self.assertEqual(code, 1)
        service.list_conversations.assert_called_once_with("u9")
        self.assertEqual(printed, ["No conversations found."])

    def test_missing_identity(self):
        code, printed, service = self._run([])

        self.assertEqual(code, 2)
        service.list_conversations.assert_not_called()

    def test_service_failure_is_reported(self):
        service_error = RuntimeError("disk full")
        with patch("sys.argv", ["check_latest_chat.py", "--user-id", "u1"]), patch.object(
            check_latest_chat, "build_service", side_effect=service_error
        ), patch("builtins.print") as mock_print:
            code = check_latest_chat.main()

        self.assertEqual(code, 1)
        mock_print.assert_called_with("Failed to fetch latest chat: disk full")


if __name__ == "__main__":
    unittest.main()
