import json
import tempfile
import unittest
from itertools import combinations
from pathlib import Path
from unittest import mock

from keyhold import processors
from keyhold.errors import (
    AgentStatusError,
    ClientOptionsError,
    PasswordFileReadError,
    RecoveryCodeFileReadError,
)
from keyhold.processors import (
    ClientOptions,
    process_authentication,
    process_client_options,
    process_client_status,
    process_new_password,
    process_password,
    process_recovery_code,
    prompt_new_password,
    prompt_password,
)

LIVE_STATUS = {
    "status": "LIVE",
    "data": {"pid": 4242, "nodeId": "vabc123", "clientHost": "127.0.0.1", "clientPort": 1314},
}


class NodePathTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.node_path = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def write_status(self, payload) -> None:
        (self.node_path / "status.json").write_text(json.dumps(payload), encoding="utf-8")

    def write_file(self, name: str, content: str) -> Path:
        path = self.node_path / name
        path.write_text(content, encoding="utf-8")
        return path


class ClientOptionsTests(NodePathTestCase):
    EXPLICIT = ("vexplicit", "::1", 55555)

    def test_partial_options_are_rejected(self) -> None:
        names = ("node_id", "client_host", "client_port")
        partial = [combo for size in (1, 2) for combo in combinations(range(3), size)]
        self.assertEqual(len(partial), 6)
        for present in partial:
            kwargs = {names[i]: self.EXPLICIT[i] for i in present}
            with self.subTest(present=[names[i] for i in present]):
                with self.assertRaises(ClientOptionsError) as ctx:
                    process_client_options(self.node_path, **kwargs)
                self.assertEqual(ctx.exception.exit_code, 64)
                for i, name in enumerate(("node ID", "client host", "client port")):
                    if i in present:
                        self.assertNotIn(f"missing {name}", ctx.exception.message)
                    else:
                        self.assertIn(f"missing {name}", ctx.exception.message)

    def test_explicit_options_win_without_reading_status(self) -> None:
        self.write_status(LIVE_STATUS)
        options = process_client_options(self.node_path, *self.EXPLICIT)
        self.assertEqual(options, ClientOptions(*self.EXPLICIT))

    def test_options_come_from_live_status(self) -> None:
        self.write_status(LIVE_STATUS)
        options = process_client_options(self.node_path)
        self.assertEqual(options, ClientOptions("vabc123", "127.0.0.1", 1314))

    def test_agent_that_is_not_live_is_an_error(self) -> None:
        with self.assertRaises(AgentStatusError):
            process_client_options(self.node_path)
        self.write_status({"status": "STARTING", "data": {"pid": 1}})
        with self.assertRaises(AgentStatusError) as ctx:
            process_client_options(self.node_path)
        self.assertEqual(ctx.exception.exit_code, 75)

    def test_live_status_without_coordinates_is_ignored(self) -> None:
        self.write_status({"status": "LIVE", "data": {"pid": 1}})
        with self.assertRaises(AgentStatusError):
            process_client_options(self.node_path)


class ClientStatusTests(NodePathTestCase):
    def test_missing_status_is_dead(self) -> None:
        client_status = process_client_status(self.node_path)
        self.assertEqual(client_status.status_info.status, "DEAD")
        self.assertFalse(client_status.explicit)
        self.assertIsNone(client_status.node_id)
        self.assertIsNone(client_status.options())

    def test_stopping_status_has_no_coordinates(self) -> None:
        self.write_status({"status": "STOPPING", "data": {"pid": 7}})
        client_status = process_client_status(self.node_path)
        self.assertEqual(client_status.status_info.status, "STOPPING")
        self.assertEqual(client_status.status_info.data, {"pid": 7})
        self.assertIsNone(client_status.client_port)

    def test_live_status_carries_coordinates(self) -> None:
        self.write_status(LIVE_STATUS)
        client_status = process_client_status(self.node_path)
        self.assertTrue(client_status.status_info.live)
        self.assertEqual(client_status.options(), ClientOptions("vabc123", "127.0.0.1", 1314))

    def test_explicit_options_still_read_status(self) -> None:
        client_status = process_client_status(self.node_path, "vother", "10.0.0.1", 80)
        self.assertTrue(client_status.explicit)
        self.assertEqual(client_status.status_info.status, "DEAD")
        self.assertEqual(client_status.options(), ClientOptions("vother", "10.0.0.1", 80))

    def test_partial_options_are_rejected(self) -> None:
        with self.assertRaises(ClientOptionsError):
            process_client_status(self.node_path, client_port=80)


class PasswordTests(NodePathTestCase):
    def test_password_file_is_trimmed(self) -> None:
        path = self.write_file("password", "  secret\n")
        self.assertEqual(process_password(path, env={}), "secret")

    def test_file_wins_over_environment_and_prompt(self) -> None:
        path = self.write_file("password", "from-file")
        prompt = mock.Mock(return_value="from-prompt")
        result = process_password(path, env={"KH_PASSWORD": "from-env"}, prompt=prompt)
        self.assertEqual(result, "from-file")
        prompt.assert_not_called()

    def test_environment_wins_over_prompt(self) -> None:
        prompt = mock.Mock(return_value="from-prompt")
        result = process_password(env={"KH_PASSWORD": ""}, prompt=prompt)
        self.assertEqual(result, "")
        prompt.assert_not_called()

    def test_prompt_is_last_resort(self) -> None:
        self.assertEqual(process_password(env={}, prompt=lambda: "typed"), "typed")
        self.assertIsNone(process_password(env={}, prompt=lambda: None))

    def test_unreadable_file_reports_os_error(self) -> None:
        missing = self.node_path / "nope"
        with self.assertRaises(PasswordFileReadError) as ctx:
            process_password(missing, env={})
        error = ctx.exception
        self.assertEqual(error.exit_code, 66)
        self.assertEqual(error.data["code"], "ENOENT")
        self.assertEqual(error.data["path"], str(missing))
        self.assertIsInstance(error.cause, FileNotFoundError)

    def test_new_password_precedence(self) -> None:
        env = {"KH_PASSWORD": "current", "KH_PASSWORD_NEW": "next"}
        self.assertEqual(process_new_password(env=env), "current")
        self.assertEqual(process_new_password(existing=True, env=env), "next")
        path = self.write_file("new", "from-file\n")
        self.assertEqual(process_new_password(path, env=env), "from-file")
        self.assertEqual(
            process_new_password(existing=True, env={"KH_PASSWORD": "x"}, prompt=lambda: "p"),
            "p",
        )

    def test_recovery_code(self) -> None:
        path = self.write_file("recovery", " word word word \n")
        self.assertEqual(process_recovery_code(path, env={}), "word word word")
        self.assertEqual(process_recovery_code(env={"KH_RECOVERY_CODE": "code"}), "code")
        self.assertIsNone(process_recovery_code(env={}))
        with self.assertRaises(RecoveryCodeFileReadError):
            process_recovery_code(self.node_path / "missing", env={})


class AuthenticationTests(NodePathTestCase):
    def test_no_credentials_is_empty_metadata(self) -> None:
        self.assertEqual(process_authentication(env={}), {})

    def test_token_is_passed_through(self) -> None:
        self.assertEqual(
            process_authentication(env={"KH_TOKEN": "abc.def"}),
            {"authorization": "Bearer abc.def"},
        )

    def test_password_wins_over_token(self) -> None:
        meta = process_authentication(env={"KH_PASSWORD": "pw", "KH_TOKEN": "abc"})
        self.assertEqual(meta, {"authorization": "Basic cHc="})

    def test_password_file_wins_over_environment(self) -> None:
        path = self.write_file("password", "pw\n")
        meta = process_authentication(path, env={"KH_PASSWORD": "other"})
        self.assertEqual(meta, {"authorization": "Basic cHc="})


class PromptTests(unittest.TestCase):
    def test_non_interactive_prompt_yields_nothing(self) -> None:
        console = mock.Mock()
        with mock.patch.object(processors, "_interactive", return_value=False):
            self.assertIsNone(prompt_password(console))
            self.assertIsNone(prompt_new_password(console))
        console.input.assert_not_called()

    def test_cancelled_prompt_yields_nothing(self) -> None:
        console = mock.Mock()
        console.input.side_effect = KeyboardInterrupt
        with mock.patch.object(processors, "_interactive", return_value=True):
            self.assertIsNone(prompt_password(console))

    def test_prompt_is_masked(self) -> None:
        console = mock.Mock()
        console.input.return_value = "hunter2"
        with mock.patch.object(processors, "_interactive", return_value=True):
            self.assertEqual(prompt_password(console), "hunter2")
        console.input.assert_called_once_with("Please enter the password: ", password=True)

    def test_new_password_prompt_loops_on_mismatch(self) -> None:
        console = mock.Mock()
        console.input.side_effect = ["one", "two", "three", "three"]
        with mock.patch.object(processors, "_interactive", return_value=True):
            self.assertEqual(prompt_new_password(console), "three")
        console.print.assert_called_once_with("Passwords do not match!")


if __name__ == "__main__":
    unittest.main()
