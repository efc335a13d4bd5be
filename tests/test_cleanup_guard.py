#!/usr/bin/env python3
"""
Unit tests for CleanupGuard: installation, re-arming and the exit handler.
"""

import os
import signal
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch, MagicMock, call

# Import from parent directory
sys.path.insert(0, str(Path(__file__).parent.parent))
import gha_runner


class GuardTestCase(unittest.TestCase):

    def setUp(self):
        self.original_handlers = {s: signal.getsignal(s) for s in gha_runner.CleanupGuard.SIGNALS}

        self.runner = MagicMock()
        self.workspace = MagicMock()
        self.register = MagicMock()
        self.guard = gha_runner.CleanupGuard(self.runner, self.workspace, register=self.register)

        # Records the relative order of deregistration and wipe
        self.calls = MagicMock()
        self.calls.attach_mock(self.runner.remove, "remove")
        self.calls.attach_mock(self.workspace.wipe_work_dir, "wipe_work_dir")

    def tearDown(self):
        for signum, handler in self.original_handlers.items():
            signal.signal(signum, handler)


class TestCleanupGuardInstall(GuardTestCase):

    def test_install_registers_exit_handler(self):
        self.guard.install()

        self.register.assert_called_once_with(self.guard.run)
        self.assertFalse(self.guard.state.has_token)

    def test_install_hooks_termination_signals(self):
        self.guard.install()

        for signum in gha_runner.CleanupGuard.SIGNALS:
            self.assertEqual(signal.getsignal(signum), self.guard._on_signal)

    def test_install_twice_fails(self):
        self.guard.install()

        with self.assertRaises(gha_runner.RunnerError):
            self.guard.install()

        self.assertEqual(self.register.call_count, 1)

    def test_rearm_before_install_fails(self):
        with self.assertRaises(gha_runner.RunnerError):
            self.guard.rearm("AABBCCREG")

    def test_rearm_replaces_state(self):
        self.guard.install()
        before = self.guard.state

        self.guard.rearm("AABBCCREG")

        self.assertIsNot(self.guard.state, before)
        self.assertFalse(before.has_token, "Previous state must not be mutated")
        self.assertTrue(self.guard.state.has_token)
        self.assertEqual(self.guard.state.token, "AABBCCREG")

    @patch('gha_runner.logger')
    def test_signal_becomes_system_exit(self, _):
        self.guard.install()

        with self.assertRaises(SystemExit) as cm:
            self.guard._on_signal(signal.SIGTERM, None)

        self.assertEqual(cm.exception.code, 128 + signal.SIGTERM)

    @patch('gha_runner.logger')
    def test_real_signal_becomes_system_exit(self, _):
        self.guard.install()

        with self.assertRaises(SystemExit) as cm:
            os.kill(os.getpid(), signal.SIGTERM)
            # Handler runs before the next bytecode
            signal.pause()

        self.assertEqual(cm.exception.code, 143)


class TestCleanupGuardRun(GuardTestCase):

    def test_no_token_only_wipes(self):
        self.guard.install()

        self.guard.run()

        self.runner.remove.assert_not_called()
        self.workspace.wipe_work_dir.assert_called_once()

    def test_token_deregisters_then_wipes(self):
        self.guard.install()
        self.guard.rearm("AABBCCREG")

        self.guard.run()

        self.runner.remove.assert_called_once_with("AABBCCREG")
        self.assertEqual(self.calls.mock_calls, [call.remove("AABBCCREG"), call.wipe_work_dir()])

    @patch('gha_runner.logger')
    def test_deregistration_failure_swallowed(self, mock_logger):
        self.runner.remove.side_effect = gha_runner.DelegatedProcessFailure("Command failed (Code 1)", 1)
        self.guard.install()
        self.guard.rearm("AABBCCREG")

        self.guard.run()

        self.workspace.wipe_work_dir.assert_called_once()
        warnings = " ".join(args[0] for args, _ in mock_logger.warning.call_args_list)
        self.assertIn("deregistration failed", warnings)

    @patch('gha_runner.logger')
    def test_unexpected_deregistration_error_swallowed(self, _):
        self.runner.remove.side_effect = RuntimeError("boom")
        self.guard.install()
        self.guard.rearm("AABBCCREG")

        self.guard.run()

        self.workspace.wipe_work_dir.assert_called_once()

    @patch('gha_runner.logger')
    def test_wipe_failure_swallowed(self, mock_logger):
        self.workspace.wipe_work_dir.side_effect = gha_runner.CleanupFailure("Failed to remove x")
        self.guard.install()

        self.guard.run()

        warnings = " ".join(args[0] for args, _ in mock_logger.warning.call_args_list)
        self.assertIn("Failed to remove x", warnings)

    def test_runs_once(self):
        self.guard.install()
        self.guard.rearm("AABBCCREG")

        self.guard.run()
        self.guard.run()

        self.assertEqual(self.runner.remove.call_count, 1)
        self.assertEqual(self.workspace.wipe_work_dir.call_count, 1)

    def test_signal_before_shield_keeps_cleanup_pending(self):
        """Exit raised while shielding must not consume the single run"""
        self.guard.install()
        self.guard.rearm("AABBCCREG")

        with patch.object(self.guard, '_shield', side_effect=SystemExit(143)):
            with self.assertRaises(SystemExit):
                self.guard.run()

        self.runner.remove.assert_not_called()

        self.guard.run()

        self.runner.remove.assert_called_once_with("AABBCCREG")
        self.workspace.wipe_work_dir.assert_called_once()

    @patch('gha_runner.logger')
    def test_signals_ignored_during_cleanup(self, _):
        self.guard.install()
        observed = {}

        def remove(token):
            observed["handler"] = signal.getsignal(signal.SIGTERM)
            # Must not abort the cleanup
            observed["handler"](signal.SIGTERM, None)

        self.runner.remove.side_effect = remove
        self.guard.rearm("AABBCCREG")

        self.guard.run()

        self.assertEqual(observed["handler"], self.guard._on_signal_during_cleanup)
        self.workspace.wipe_work_dir.assert_called_once()


class TestCleanupGuardWithWorkspace(unittest.TestCase):
    """Guard wired to a real Workspace on a temporary directory."""

    def setUp(self):
        self.original_handlers = {s: signal.getsignal(s) for s in gha_runner.CleanupGuard.SIGNALS}
        self.tmp = tempfile.TemporaryDirectory()
        self.home = Path(self.tmp.name)
        with patch.dict(os.environ, {"RUNNER_HOME": str(self.home)}, clear=True):
            self.config = gha_runner.Config()
        self.runner = MagicMock()
        self.guard = gha_runner.CleanupGuard(self.runner, gha_runner.Workspace(self.config), register=MagicMock())

    def tearDown(self):
        for signum, handler in self.original_handlers.items():
            signal.signal(signum, handler)
        self.tmp.cleanup()

    def test_wipes_even_when_deregistration_fails(self):
        work = self.home / "_work"
        (work / "acme").mkdir(parents=True)
        (work / "acme" / "build.log").write_text("log")
        self.runner.remove.side_effect = gha_runner.RunnerError("remove failed")

        self.guard.install()
        self.guard.rearm("AABBCCREG")
        self.guard.run()

        self.runner.remove.assert_called_once_with("AABBCCREG")
        self.assertTrue(work.is_dir())
        self.assertEqual(list(work.iterdir()), [])

    def test_without_work_dir(self):
        self.guard.install()
        self.guard.run()

        self.runner.remove.assert_not_called()
        self.assertFalse((self.home / "_work").exists())


if __name__ == '__main__':
    unittest.main(verbosity=2)
