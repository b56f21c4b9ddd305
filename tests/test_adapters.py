"""
Tests for the host adapters.

CLI-backed adapters are exercised with ``run_command`` patched per
module, so no test touches apt, ufw, systemd or docker. The command
runner itself and the filesystem adapter run for real against ``sh``
and ``tmp_path``.
"""

import stat
from pathlib import Path

import pytest

from hostplan.adapters.containers.docker import DockerComposeOrchestrator
from hostplan.adapters.cron.crontab import CrontabTable
from hostplan.adapters.firewall.ufw import UfwFirewall, rule_text
from hostplan.adapters.mock import MockHost
from hostplan.adapters.packages.apt import AptPackageManager
from hostplan.adapters.registry import CollaboratorRegistry, local_registry
from hostplan.adapters.services.systemd import SystemdServiceManager
from hostplan.adapters.shell.command import (
    CommandFailed,
    CommandResult,
    CommandTimeout,
    LocalShell,
    remaining_time,
    run_command,
    step_deadline,
)
from hostplan.adapters.shell.filesystem import LocalFilesystem
from hostplan.adapters.tls.certbot import CertbotIssuer
from hostplan.core.errors import ExecutionFailed


class FakeRunner:
    """Stands in for ``run_command``; answers by command prefix."""

    def __init__(self, responses=None):
        self.calls = []
        self.responses = responses or {}

    def __call__(self, args, *, timeout=None, input=None, env_overrides=None, cwd=None, check=True):
        args = list(args)
        self.calls.append({"args": args, "input": input, "env": env_overrides})
        for prefix, (code, out, err) in self.responses.items():
            if " ".join(args).startswith(prefix):
                if check and code != 0:
                    raise CommandFailed(args, code, err)
                return CommandResult(args=args, returncode=code, stdout=out, stderr=err)
        return CommandResult(args=args, returncode=0, stdout="", stderr="")

    @property
    def commands(self):
        return [" ".join(c["args"]) for c in self.calls]


@pytest.fixture
def fake(monkeypatch):
    def install(module, responses=None):
        runner = FakeRunner(responses)
        monkeypatch.setattr(f"hostplan.adapters.{module}.run_command", runner)
        return runner
    return install


# ── Command runner ──────────────────────────────────────────────────


class TestRunCommand:
    def test_captures_output(self):
        result = run_command(["sh", "-c", "echo hello; echo oops >&2"])
        assert result.ok
        assert result.stdout == "hello"
        assert result.stderr == "oops"

    def test_nonzero_raises(self):
        with pytest.raises(CommandFailed) as exc:
            run_command(["sh", "-c", "echo broken >&2; exit 3"])
        assert exc.value.returncode == 3
        assert "broken" in str(exc.value)

    def test_nonzero_unchecked(self):
        assert run_command(["sh", "-c", "exit 1"], check=False).returncode == 1

    def test_missing_binary(self):
        with pytest.raises(CommandFailed, match="command not found"):
            run_command(["hostplan-no-such-binary"])

    def test_timeout(self):
        with pytest.raises(CommandTimeout, match="^Timeout"):
            run_command(["sleep", "5"], timeout=0.2)

    def test_env_overrides(self):
        result = run_command(["sh", "-c", "echo $HOSTPLAN_TEST"], env_overrides={"HOSTPLAN_TEST": "x"})
        assert result.stdout == "x"

    def test_step_deadline_bounds_commands(self):
        with step_deadline(0.2):
            assert remaining_time(300) <= 0.2
            with pytest.raises(CommandTimeout):
                run_command(["sleep", "5"])
        assert remaining_time(300) == 300

    def test_expired_deadline_refuses_to_start(self):
        with step_deadline(0):
            with pytest.raises(CommandTimeout):
                run_command(["true"])

    def test_local_shell(self):
        assert LocalShell().run("echo $((1 + 2))") == "3"


# ── Filesystem ──────────────────────────────────────────────────────


class TestLocalFilesystem:
    def test_write_read_mode(self, tmp_path: Path):
        fs = LocalFilesystem(root=tmp_path)
        fs.write("/etc/app/app.conf", b"x=1\n", 0o600)

        target = tmp_path / "etc" / "app" / "app.conf"
        assert target.read_bytes() == b"x=1\n"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600
        assert fs.read("/etc/app/app.conf") == b"x=1\n"
        assert fs.mode("/etc/app/app.conf") == 0o600

    def test_default_mode(self, tmp_path: Path):
        fs = LocalFilesystem(root=tmp_path)
        fs.write("/a", b"")
        assert fs.mode("/a") == 0o644

    def test_missing(self, tmp_path: Path):
        fs = LocalFilesystem(root=tmp_path)
        assert fs.read("/nope") is None
        assert fs.mode("/nope") is None

    def test_overwrite_leaves_no_temp_files(self, tmp_path: Path):
        fs = LocalFilesystem(root=tmp_path)
        fs.write("/a", b"one")
        fs.write("/a", b"two")
        assert fs.read("/a") == b"two"
        assert [p.name for p in tmp_path.iterdir()] == ["a"]

    def test_remove(self, tmp_path: Path):
        fs = LocalFilesystem(root=tmp_path)
        fs.write("/a", b"x")
        fs.remove("/a")
        fs.remove("/a")
        assert fs.read("/a") is None


# ── CLI-backed adapters ─────────────────────────────────────────────


class TestApt:
    def test_is_installed(self, fake):
        runner = fake("packages.apt", {
            "dpkg-query -W -f=${Status} curl": (0, "install ok installed", ""),
            "dpkg-query -W -f=${Status} ghost": (1, "", "no packages found matching ghost"),
        })
        apt = AptPackageManager()
        assert apt.is_installed("curl")
        assert not apt.is_installed("ghost")
        assert runner.calls[0]["args"][0] == "dpkg-query"

    def test_dpkg_error_raises(self, fake):
        fake("packages.apt", {"dpkg-query": (2, "", "dpkg: database locked")})
        with pytest.raises(CommandFailed):
            AptPackageManager().is_installed("curl")

    def test_install_with_update(self, fake):
        runner = fake("packages.apt")
        AptPackageManager().install(["nginx", "curl"], update=True)
        assert runner.commands == ["apt-get update", "apt-get install -y nginx curl"]
        assert runner.calls[1]["env"] == {"DEBIAN_FRONTEND": "noninteractive"}

    def test_remove(self, fake):
        runner = fake("packages.apt")
        AptPackageManager().remove(["nginx"])
        assert runner.commands == ["apt-get remove -y nginx"]


class TestUfw:
    def test_rule_text(self):
        assert rule_text(80) == "80/tcp"
        assert rule_text("53", "udp") == "53/udp"
        assert rule_text(53, "any") == "53"
        assert rule_text("OpenSSH") == "OpenSSH"

    def test_list_rules(self, fake):
        fake("firewall.ufw", {"ufw show added": (0, "Added user rules (see 'ufw status' for running firewall):\n"
                                                     "ufw allow OpenSSH\nufw allow 80/tcp\n", "")})
        assert UfwFirewall().list_rules() == {"OpenSSH", "80/tcp"}

    def test_is_active(self, fake):
        fake("firewall.ufw", {"ufw status": (0, "Status: active\n\nTo  Action  From", "")})
        assert UfwFirewall().is_active()

    def test_mutations(self, fake):
        runner = fake("firewall.ufw")
        ufw = UfwFirewall()
        ufw.allow("443/tcp")
        ufw.delete("443/tcp")
        ufw.enable()
        assert runner.commands == ["ufw allow 443/tcp", "ufw delete allow 443/tcp", "ufw --force enable"]


class TestSystemd:
    def test_status(self, fake):
        fake("services.systemd", {
            "systemctl is-active nginx": (0, "active", ""),
            "systemctl is-active app": (3, "inactive", ""),
            "systemctl is-active weird": (4, "maintenance", ""),
        })
        sm = SystemdServiceManager()
        assert sm.status("nginx") == "running"
        assert sm.status("app") == "stopped"
        assert sm.status("weird") == "unknown"

    def test_is_enabled(self, fake):
        fake("services.systemd", {
            "systemctl is-enabled nginx": (0, "enabled", ""),
            "systemctl is-enabled app": (1, "disabled", ""),
        })
        sm = SystemdServiceManager()
        assert sm.is_enabled("nginx")
        assert not sm.is_enabled("app")

    def test_enable_reloads_units_first(self, fake):
        runner = fake("services.systemd")
        SystemdServiceManager().enable("n8n")
        assert runner.commands == ["systemctl daemon-reload", "systemctl enable n8n"]

    def test_restart_failure_raises(self, fake):
        fake("services.systemd", {"systemctl restart": (1, "", "Job for nginx.service failed")})
        with pytest.raises(CommandFailed, match="Job for nginx.service failed"):
            SystemdServiceManager().restart("nginx")


class TestDockerCompose:
    def test_services_and_running(self, fake):
        fake("containers.docker", {
            "docker compose -f /opt/c.yml config --services": (0, "web\ndb\n", ""),
            "docker compose -f /opt/c.yml ps": (0, "web\n", ""),
        })
        dc = DockerComposeOrchestrator()
        assert dc.services("/opt/c.yml") == {"web", "db"}
        assert dc.running("/opt/c.yml") == {"web"}

    def test_up_passes_env_to_child_only(self, fake):
        runner = fake("containers.docker")
        DockerComposeOrchestrator().up("/opt/c.yml", {"PG_PASS": "x"}, "/opt")
        call = runner.calls[0]
        assert call["args"] == ["docker", "compose", "-f", "/opt/c.yml", "--project-directory", "/opt",
                                "up", "-d", "--remove-orphans"]
        assert call["env"] == {"PG_PASS": "x"}


class TestCertbot:
    def test_has_certificate(self, tmp_path: Path):
        (tmp_path / "example.com").mkdir()
        (tmp_path / "example.com" / "fullchain.pem").write_text("cert", encoding="utf-8")
        issuer = CertbotIssuer(live_dir=str(tmp_path))
        assert issuer.has_certificate("example.com")
        assert not issuer.has_certificate("other.com")

    def test_issue_uses_certonly(self, fake):
        runner = fake("tls.certbot")
        CertbotIssuer().issue("example.com", "me@example.com", "standalone")
        assert runner.calls[0]["args"][:3] == ["certbot", "certonly", "--standalone"]
        assert "--non-interactive" in runner.calls[0]["args"]


class TestCrontab:
    def test_no_crontab_is_empty(self, fake):
        fake("cron.crontab", {"crontab -l": (1, "", "no crontab for root")})
        assert CrontabTable().lines() == []

    def test_add_appends_once(self, fake):
        runner = fake("cron.crontab", {"crontab -u backup -l": (0, "MAILTO=\"\"\n0 1 * * * /old\n", "")})
        table = CrontabTable()
        table.add("0 2 * * * /opt/backup.sh", "backup")
        assert runner.calls[-1]["args"] == ["crontab", "-u", "backup", "-"]
        assert runner.calls[-1]["input"] == 'MAILTO=""\n0 1 * * * /old\n0 2 * * * /opt/backup.sh\n'

        runner.calls.clear()
        table.add("0 1 * * * /old", "backup")
        assert runner.commands == ["crontab -u backup -l"]

    def test_remove(self, fake):
        runner = fake("cron.crontab", {"crontab -l": (0, "0 1 * * * /old\n", "")})
        CrontabTable().remove("0 1 * * * /old")
        assert runner.calls[-1]["input"] == ""


# ── Registry and mock host ──────────────────────────────────────────


class TestRegistry:
    def test_local_registry_has_every_capability(self):
        registry = local_registry()
        assert set(registry.list_capabilities()) == {
            "packages", "filesystem", "firewall", "services",
            "containers", "certificates", "cron", "shell",
        }

    def test_wrong_adapter_type(self):
        with pytest.raises(ValueError, match="does not implement"):
            CollaboratorRegistry().register("firewall", LocalShell())

    def test_unknown_capability(self):
        with pytest.raises(ValueError, match="Unknown capability"):
            CollaboratorRegistry().register("dns", LocalShell())

    def test_missing_capability(self):
        with pytest.raises(ExecutionFailed, match="No collaborator"):
            CollaboratorRegistry().packages

    def test_adapter_status(self):
        status = MockHost().registry().adapter_status()
        assert status["packages"] == {"name": "mock-packages", "available": True,
                                      "type": "MockPackageManager"}


class TestMockHost:
    def test_failure_per_target(self):
        host = MockHost()
        host.set_failure("services.restart", "nginx")
        services = host.registry().services
        services.restart("app")
        with pytest.raises(ExecutionFailed):
            services.restart("nginx")
        host.clear_failure("services.restart", "nginx")
        services.restart("nginx")
        assert host.running_services == {"app", "nginx"}

    def test_queries_are_not_mutations(self):
        host = MockHost()
        registry = host.registry()
        registry.packages.is_installed("curl")
        registry.filesystem.read("/etc/x")
        assert host.mutation_count == 0
        registry.packages.install(["curl"])
        assert host.mutation_count == 1
        assert len(host.calls("packages.is_installed")) == 1

    def test_compose_reads_mock_files(self):
        host = MockHost()
        containers = host.registry().containers
        with pytest.raises(CommandFailed):
            containers.services("/c.yml")
        host.put_file("/c.yml", "services:\n  a: {}\n  b: {}\n")
        assert containers.services("/c.yml") == {"a", "b"}
