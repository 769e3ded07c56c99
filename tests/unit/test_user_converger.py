"""Tests for user account convergence."""

import pytest

from fleetconf.errors import RemoteExecutionFailed, UserError
from fleetconf.ops.user import UserAccount, UserConverger, UserDiff, UserSpec, UserState


@pytest.fixture
def converger():
    return UserConverger()


class TestUserSpec:
    """Tests for UserSpec validation."""

    def test_defaults(self):
        """Should default to a present account with a home directory."""
        spec = UserSpec("deploy")
        assert spec.state == UserState.PRESENT
        assert spec.create_home is True
        assert spec.remove_home is False
        assert spec.groups is None

    def test_coerces_state_and_groups(self):
        """String states and group lists should be normalized."""
        spec = UserSpec("deploy", state="absent", groups=["wheel", "users"])
        assert spec.state == UserState.ABSENT
        assert spec.groups == frozenset({"wheel", "users"})

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"name": "bad name"},
            {"name": ""},
            {"name": "deploy", "uid": -1},
            {"name": "deploy", "expires": "2030/01/01"},
            {"name": "deploy", "comment": "a:b"},
        ],
    )
    def test_invalid(self, kwargs):
        """Invalid specs should raise ValueError."""
        with pytest.raises(ValueError):
            UserSpec(**kwargs)

    def test_expiry_days(self):
        """Expiry should convert to days since the epoch."""
        assert UserSpec("deploy", expires="1970-01-11").expiry_days == 10

    def test_password_hidden_from_repr(self):
        """The hash should not appear in repr."""
        assert "$6$" not in repr(UserSpec("deploy", password="$6$salt$hash"))

    def test_referenced_groups(self):
        """Primary group should come first."""
        spec = UserSpec("deploy", group="staff", groups={"wheel", "staff"})
        assert spec.referenced_groups == ["staff", "wheel"]


class TestUserDiff:
    """Tests for UserDiff.compute."""

    def account(self, **kwargs) -> UserAccount:
        base = dict(
            name="deploy", uid=1001, gid=1001, comment="", home="/home/deploy",
            shell="/bin/bash", primary_group="deploy", groups=frozenset({"deploy", "wheel"}),
        )
        base.update(kwargs)
        return UserAccount(**base)

    def test_no_difference(self):
        """Matching fields should give an empty diff."""
        diff = UserDiff.compute(self.account(), UserSpec("deploy", shell="/bin/bash", groups={"wheel"}))
        assert diff.is_empty

    def test_scalar_fields(self):
        """Differing scalars should map to usermod flags."""
        diff = UserDiff.compute(self.account(), UserSpec("deploy", uid=2000, shell="/bin/zsh", comment="Deploy"))
        assert diff.scalar_args == ["-u", "2000", "-s", "/bin/zsh", "-c", "Deploy"]
        assert diff.changed_fields == ["uid", "shell", "comment"]

    def test_group_membership(self):
        """Supplementary group changes should ignore the primary group."""
        diff = UserDiff.compute(self.account(), UserSpec("deploy", groups={"docker"}))
        assert diff.add_groups == {"docker"}
        assert diff.remove_groups == {"wheel"}
        assert diff.changed_fields == ["+docker", "-wheel"]

    def test_primary_group_switch(self):
        """The old primary group should count as a wanted supplementary group."""
        spec = UserSpec("deploy", group="users", groups={"deploy", "wheel"})
        diff = UserDiff.compute(self.account(), spec)
        assert diff.primary_group == "users"
        assert diff.add_groups == {"deploy"}
        assert diff.remove_groups == frozenset()

    def test_unmanaged_groups(self):
        """groups=None should leave membership alone."""
        diff = UserDiff.compute(self.account(), UserSpec("deploy"))
        assert diff.add_groups == frozenset()
        assert diff.remove_groups == frozenset()

    def test_from_passwd(self):
        """Should parse a passwd line."""
        account = UserAccount.from_passwd("deploy:x:1001:1001:Deploy User:/home/deploy:/bin/bash\n")
        assert account.uid == 1001
        assert account.comment == "Deploy User"
        assert account.shell == "/bin/bash"

    def test_from_passwd_malformed(self):
        """Short lines should be rejected."""
        with pytest.raises(ValueError):
            UserAccount.from_passwd("deploy:x:1001")


class TestUserConverger:
    """Tests for UserConverger against a fake host."""

    def test_create(self, converger, session, fake_host):
        """A missing account should be created."""
        spec = UserSpec("deploy", shell="/bin/bash", groups={"wheel"}, comment="Deploy")

        outcome = converger.converge(session, spec)

        assert outcome.changed is True
        assert outcome.action == "created"
        assert "useradd -G wheel -s /bin/bash -c Deploy -m deploy" in fake_host.commands
        assert fake_host.users["deploy"]["groups"] == {"wheel"}
        assert "/home/deploy" in fake_host.dirs

    def test_second_converge_is_noop(self, converger, session, fake_host):
        """Converging twice should issue no writes the second time."""
        spec = UserSpec(
            "deploy",
            shell="/bin/bash",
            groups={"wheel", "users"},
            password="$6$salt$hash",
            expires="2030-01-01",
        )
        converger.converge(session, spec)
        fake_host.reset_log()

        outcome = converger.converge(session, spec)

        assert outcome.changed is False
        assert outcome.action == "none"
        assert fake_host.writes == []

    def test_create_without_home(self, converger, session, fake_host):
        """create_home=False should pass -M."""
        converger.converge(session, UserSpec("svc", create_home=False, system=True))
        useradd = next(c for c in fake_host.commands if c.startswith("useradd"))
        assert " -M " in useradd
        assert " -r " in useradd
        assert fake_host.users["svc"]["system"] is True

    def test_primary_group_not_supplementary(self, converger, session, fake_host):
        """The primary group should not be passed to -G."""
        converger.converge(session, UserSpec("deploy", group="users", groups={"users"}))
        assert "useradd -g users -m deploy" in fake_host.commands

    def test_modify_shell(self, converger, session, fake_host):
        """A drifted shell should be corrected with usermod."""
        fake_host.add_user("deploy", shell="/bin/sh")

        outcome = converger.converge(session, UserSpec("deploy", shell="/bin/bash"))

        assert outcome.action == "modified"
        assert outcome.changes == ["shell"]
        assert fake_host.writes == ["usermod -s /bin/bash deploy"]

    def test_modify_groups(self, converger, session, fake_host):
        """Groups should be added with usermod -a and removed with gpasswd."""
        fake_host.add_user("deploy", groups={"users"})

        outcome = converger.converge(session, UserSpec("deploy", groups={"wheel"}))

        assert outcome.changes == ["+wheel", "-users"]
        assert fake_host.writes == ["usermod -a -G wheel deploy", "gpasswd -d deploy users"]
        assert fake_host.users["deploy"]["groups"] == {"wheel"}

    def test_switch_primary_group_keeps_old_one(self, converger, session, fake_host):
        """Moving the primary group should keep the old one as supplementary in one pass."""
        fake_host.add_user("deploy", primary="deploy", groups={"wheel"})
        spec = UserSpec("deploy", group="users", groups={"deploy", "wheel"})

        first = converger.converge(session, spec)
        second = converger.converge(session, spec)

        assert first.changes == ["primary_group", "+deploy"]
        assert second.changed is False
        assert fake_host.users["deploy"]["primary"] == "users"
        assert fake_host.users["deploy"]["groups"] == {"deploy", "wheel"}

    def test_unmanaged_groups_untouched(self, converger, session, fake_host):
        """Without groups in the UserSpec, membership is never touched."""
        fake_host.add_user("deploy", groups={"users", "wheel"})

        outcome = converger.converge(session, UserSpec("deploy"))

        assert outcome.changed is False
        assert fake_host.users["deploy"]["groups"] == {"users", "wheel"}

    def test_primary_gid(self, converger, session, fake_host):
        """A numeric gid should be compared against the passwd gid."""
        fake_host.add_user("deploy")

        outcome = converger.converge(session, UserSpec("deploy", gid=100))

        assert outcome.changes == ["primary_group"]
        assert fake_host.users["deploy"]["primary"] == "users"

    def test_password_change(self, converger, session, fake_host):
        """A different hash should be set with usermod -p."""
        fake_host.add_user("deploy", password="$6$old")

        outcome = converger.converge(session, UserSpec("deploy", password="$6$new"))

        assert outcome.changes == ["password"]
        assert fake_host.users["deploy"]["password"] == "$6$new"

    def test_shadow_unreadable(self, converger, session, fake_host):
        """Managing the password without shadow access should fail."""
        fake_host.add_user("deploy")
        fake_host.shadow_readable = False

        with pytest.raises(UserError, match="shadow"):
            converger.converge(session, UserSpec("deploy", password="$6$new"))

    def test_shadow_not_read_when_unmanaged(self, converger, session, fake_host):
        """The shadow entry is only read when password or expiry is managed."""
        fake_host.add_user("deploy")
        converger.converge(session, UserSpec("deploy", shell="/bin/bash"))
        assert not any(c.startswith("getent shadow") for c in fake_host.commands)

    def test_absent_removes(self, converger, session, fake_host):
        """An existing account should be removed, keeping home by default."""
        fake_host.add_user("olduser")

        outcome = converger.converge(session, UserSpec("olduser", state=UserState.ABSENT))

        assert outcome.action == "removed"
        assert fake_host.writes == ["userdel olduser"]
        assert "olduser" not in fake_host.users

    def test_absent_remove_home(self, converger, session, fake_host):
        """remove_home should pass -r."""
        fake_host.add_user("olduser")
        fake_host.dirs.add("/home/olduser")

        converger.converge(session, UserSpec("olduser", state="absent", remove_home=True))

        assert fake_host.writes == ["userdel -r olduser"]
        assert "/home/olduser" not in fake_host.dirs

    def test_absent_already_gone(self, converger, session, fake_host):
        """Removing a missing account should be a no-op."""
        outcome = converger.converge(session, UserSpec("ghost", state="absent"))

        assert outcome.changed is False
        assert fake_host.commands == ["getent passwd ghost"]

    def test_missing_group(self, converger, session, fake_host):
        """A reference to a missing group should fail before any write."""
        with pytest.raises(UserError, match="docker"):
            converger.converge(session, UserSpec("deploy", groups={"docker", "wheel"}))
        assert fake_host.writes == []

    def test_insufficient_privilege(self, converger, session, fake_host):
        """Permission failures should be reported as UserError."""
        fake_host.privileged = False

        with pytest.raises(UserError, match="insufficient privilege"):
            converger.converge(session, UserSpec("deploy"))

    def test_other_tool_failure_redacts_password(self, converger, session, fake_host):
        """Other tool failures should not leak the password hash."""
        fake_host.handlers["useradd"] = lambda argv: (4, "", "useradd: UID 0 is not unique\n")

        with pytest.raises(RemoteExecutionFailed) as exc_info:
            converger.converge(session, UserSpec("deploy", uid=0, password="$6$secret"))

        assert exc_info.value.exit_code == 4
        assert "$6$secret" not in exc_info.value.command
        assert "********" in exc_info.value.command
