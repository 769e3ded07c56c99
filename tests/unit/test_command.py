"""Tests for commands, ping and scripts."""

import pytest

from fleetconf.errors import RemoteExecutionFailed
from fleetconf.ops.command import ping, run_command, run_script


class TestRunCommand:
    """Tests for run_command."""

    def test_success(self, session):
        """Should return the command output."""
        result = run_command(session, "echo hello")
        assert result.stdout == "hello\n"

    def test_failure_raises(self, session, fake_host):
        """Non-zero exits should raise with the output attached."""
        fake_host.handlers["false"] = lambda argv: (1, "partial\n", "it broke\n")

        with pytest.raises(RemoteExecutionFailed) as exc_info:
            run_command(session, "false")

        assert exc_info.value.exit_code == 1
        assert exc_info.value.stdout == "partial\n"
        assert exc_info.value.stderr == "it broke\n"


class TestPing:
    """Tests for ping."""

    def test_ping(self, session):
        """A host that echoes back should answer."""
        assert ping(session) is True

    def test_ping_wrong_reply(self, session, fake_host):
        """An unexpected reply should count as no answer."""
        fake_host.outputs["echo pong"] = "motd banner\n"
        assert ping(session) is False


class TestRunScript:
    """Tests for run_script."""

    def test_runs_and_cleans_up(self, session, fake_host):
        """The script should run from a staged file that is then removed."""
        result = run_script(session, "#!/bin/sh\r\necho one\r\necho two\r\n")

        assert result.stdout == "ran 3 lines\n"
        script_path = fake_host.uploads[0]
        assert script_path.startswith("/tmp/fleetconf-script.sh.tmp.")
        assert f"chmod 700 {script_path}" in fake_host.commands
        assert script_path not in fake_host.files

    def test_carriage_returns_stripped(self, session, fake_host):
        """CRLF scripts should be uploaded with LF endings."""
        seen = {}

        def capture(argv):
            seen["body"] = fake_host.files[argv[1]]
            return 0, "", ""

        fake_host.handlers["sh"] = capture
        run_script(session, "echo hi\r\n")

        assert seen["body"] == b"echo hi\n"

    def test_failure_still_cleans_up(self, session, fake_host):
        """A failing script should raise and still be removed."""
        with pytest.raises(RemoteExecutionFailed) as exc_info:
            run_script(session, "echo start\nexit 3\n")

        assert exc_info.value.exit_code == 3
        assert not any("fleetconf-script" in path for path in fake_host.files)
