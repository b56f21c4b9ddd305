"""
Tests for the plan runner — ordering, idempotence, failure policy,
rollback, dry-run, locking, timeouts and cancellation.
"""

import json
import os
import signal
from pathlib import Path

import pytest

from hostplan.adapters.mock import MockHost
from hostplan.adapters.shell.command import CommandTimeout
from hostplan.core.engine import prober
from hostplan.core.engine.runner import LOCK_FILE, PlanRunner, generate_run_id
from hostplan.core.errors import ConcurrentRunDetected
from hostplan.core.models.plan import Plan
from hostplan.core.models.record import StepOutcome, StepState
from hostplan.core.models.step import FailurePolicy
from hostplan.core.persistence.audit import AuditWriter
from hostplan.core.persistence.checkpoint import CheckpointLog, list_runs
from hostplan.core.persistence.run_lock import RunLock


def _runner(plan: Plan, host: MockHost, state_dir: Path, **kwargs) -> PlanRunner:
    return PlanRunner(plan, host.registry(), state_dir=state_dir, **kwargs)


def _states(report) -> dict[str, StepState]:
    return {s.step_id: s.state for s in report.steps}


class TestHappyPath:
    def test_applies_in_order(self, web_plan, mock_host, tmp_state_dir):
        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        assert report.exit_code == 0
        assert report.status == "ok"
        assert [s.step_id for s in report.steps] == ["install-docker", "write-config", "ensure-service"]
        assert all(s.state is StepState.APPLIED for s in report.steps)
        assert mock_host.files["/etc/app.conf"][0] == b"greeting=hello\n"

    def test_second_run_is_a_no_op(self, web_plan, mock_host, tmp_state_dir):
        _runner(web_plan, mock_host, tmp_state_dir).run()
        mock_host.reset()

        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        assert all(s.state is StepState.SATISFIED for s in report.steps)
        assert mock_host.mutation_count == 0

    def test_manual_edit_reapplies_only_the_drifted_step(self, web_plan, mock_host, tmp_state_dir):
        _runner(web_plan, mock_host, tmp_state_dir).run()
        _runner(web_plan, mock_host, tmp_state_dir).run()
        mock_host.put_file("/etc/app.conf", "greeting=edited by hand\n")
        mock_host.reset()

        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        assert _states(report) == {
            "install-docker": StepState.SATISFIED,
            "write-config": StepState.APPLIED,
            "ensure-service": StepState.SATISFIED,
        }
        assert [c.method for c in mock_host.mutations] == ["filesystem.write"]
        assert mock_host.files["/etc/app.conf"][0] == b"greeting=hello\n"

    def test_checkpoint_written_and_lock_released(self, web_plan, mock_host, tmp_state_dir):
        runner = _runner(web_plan, mock_host, tmp_state_dir)
        report = runner.run()
        records = CheckpointLog.open(Path(report.checkpoint)).records
        assert [r.step_id for r in records] == ["install-docker", "write-config", "ensure-service"]
        assert all(r.outcome is StepOutcome.APPLIED for r in records)
        assert list_runs(tmp_state_dir) == [runner.run_id]
        assert not (tmp_state_dir / LOCK_FILE).exists()

    def test_audit_entry(self, web_plan, mock_host, tmp_state_dir):
        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        entries = AuditWriter(state_dir=tmp_state_dir).read_all()
        assert len(entries) == 1
        assert entries[0].run_id == report.run_id
        assert entries[0].status == "ok"
        assert entries[0].counts == {"applied": 3}

    def test_on_step_callback(self, web_plan, mock_host, tmp_state_dir):
        seen = []
        _runner(web_plan, mock_host, tmp_state_dir, on_step=lambda s: seen.append(s.step_id)).run()
        assert seen == ["install-docker", "write-config", "ensure-service"]


class TestFailurePolicy:
    def test_abort_rolls_back_in_reverse(self, web_plan, mock_host, tmp_state_dir):
        mock_host.set_failure("services.restart", "app")
        report = _runner(web_plan, mock_host, tmp_state_dir).run()

        assert report.exit_code == 1
        assert report.aborted
        assert report.state_of("ensure-service") is StepState.FAILED
        assert [r.step_id for r in report.rollbacks] == ["write-config", "install-docker"]
        assert all(r.outcome is StepOutcome.ROLLED_BACK for r in report.rollbacks)
        assert "/etc/app.conf" not in mock_host.files
        assert "docker.io" not in mock_host.packages

    def test_rollback_entries_in_checkpoint(self, web_plan, mock_host, tmp_state_dir):
        mock_host.set_failure("services.restart", "app")
        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        outcomes = [r.outcome for r in CheckpointLog.open(Path(report.checkpoint)).records]
        assert outcomes == [
            StepOutcome.APPLIED, StepOutcome.APPLIED, StepOutcome.FAILED,
            StepOutcome.ROLLED_BACK, StepOutcome.ROLLED_BACK,
        ]

    def test_file_permission_failure_blocks_service(self, web_plan, mock_host, tmp_state_dir):
        mock_host.set_failure("filesystem.write", "/etc/app.conf",
                              PermissionError("[Errno 13] Permission denied: '/etc/app.conf'"))
        report = _runner(web_plan, mock_host, tmp_state_dir).run()

        assert report.state_of("write-config") is StepState.FAILED
        assert "Permission denied" in report.get("write-config").detail
        assert report.state_of("ensure-service") is StepState.BLOCKED
        assert not mock_host.calls("services.restart")
        assert [r.step_id for r in report.rollbacks] == ["install-docker"]

    def test_step_without_rollback_is_skipped(self, mock_host, tmp_state_dir):
        plan = Plan.parse({"steps": [
            {"id": "svc", "kind": "ServiceEnsure", "params": {"name": "app"}},
            {"id": "pkgs", "kind": "PackageInstall", "params": {"packages": ["broken"]}},
        ]})
        mock_host.set_failure("packages.install")
        report = _runner(plan, mock_host, tmp_state_dir).run()

        assert len(report.rollbacks) == 1
        assert report.rollbacks[0].outcome is StepOutcome.ROLLBACK_SKIPPED
        assert report.rollbacks[0].detail == "no rollback declared; left as-is"
        assert "app" in mock_host.running_services

    def test_failed_rollback_does_not_stop_unwind(self, web_plan, mock_host, tmp_state_dir):
        mock_host.set_failure("services.restart", "app")
        mock_host.set_failure("filesystem.remove")
        report = _runner(web_plan, mock_host, tmp_state_dir).run()

        outcomes = {r.step_id: r.outcome for r in report.rollbacks}
        assert outcomes == {
            "write-config": StepOutcome.ROLLBACK_FAILED,
            "install-docker": StepOutcome.ROLLED_BACK,
        }
        assert report.exit_code == 1

    def test_continue_runs_independent_steps(self, mock_host, tmp_state_dir):
        plan = Plan.parse({"on_failure": "continue", "steps": [
            {"id": "a", "kind": "PackageInstall", "params": {"packages": ["a"]}, "rollback": "auto"},
            {"id": "b", "kind": "PackageInstall", "params": {"packages": ["b"]}, "depends_on": ["a"]},
            {"id": "c", "kind": "PackageInstall", "params": {"packages": ["c"]}, "rollback": "auto"},
        ]})
        mock_host.set_failure("packages.install", "a")
        report = _runner(plan, mock_host, tmp_state_dir).run()

        assert _states(report) == {"a": StepState.FAILED, "b": StepState.BLOCKED, "c": StepState.APPLIED}
        assert report.get("b").detail == "dependency not met: a"
        assert report.rollbacks == []
        assert "c" in mock_host.packages
        assert report.exit_code == 1

    def test_continue_blocks_transitive_dependents(self, mock_host, tmp_state_dir):
        plan = Plan.parse({"on_failure": "continue", "steps": [
            {"id": "a", "kind": "PackageInstall", "params": {"packages": ["a"]}},
            {"id": "b", "kind": "PackageInstall", "params": {"packages": ["b"]}, "depends_on": ["a"]},
            {"id": "c", "kind": "PackageInstall", "params": {"packages": ["c"]}},
            {"id": "d", "kind": "PackageInstall", "params": {"packages": ["d"]}, "depends_on": ["b"]},
        ]})
        mock_host.set_failure("packages.install", "a")
        report = _runner(plan, mock_host, tmp_state_dir).run()

        assert _states(report) == {
            "a": StepState.FAILED,
            "b": StepState.BLOCKED,
            "c": StepState.APPLIED,
            "d": StepState.BLOCKED,
        }
        assert report.get("d").detail == "dependency not met: b"
        assert "d" not in mock_host.packages
        assert "c" in mock_host.packages

    def test_run_override_and_step_override(self, mock_host, tmp_state_dir):
        plan = Plan.parse({"steps": [
            {"id": "a", "kind": "PackageInstall", "params": {"packages": ["a"]}},
            {"id": "b", "kind": "PackageInstall", "params": {"packages": ["b"]}, "on_failure": "abort"},
            {"id": "c", "kind": "PackageInstall", "params": {"packages": ["c"]}},
        ]})
        mock_host.set_failure("packages.install")
        report = _runner(plan, mock_host, tmp_state_dir, on_failure=FailurePolicy.CONTINUE).run()

        assert _states(report) == {"a": StepState.FAILED, "b": StepState.FAILED, "c": StepState.BLOCKED}
        assert "'b' failed" in report.get("c").detail

    def test_probe_error_fails_step(self, web_plan, mock_host, tmp_state_dir):
        mock_host.set_failure("packages.is_installed")
        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        assert report.get("install-docker").detail.startswith("probe failed")
        assert mock_host.mutation_count == 0

    def test_state_check_timeout_reason_leads_with_timeout(self, web_plan, mock_host, tmp_state_dir):
        mock_host.set_failure("packages.is_installed",
                              error=CommandTimeout(["dpkg-query", "-W", "docker.io"], 30))
        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        step = report.get("install-docker")
        assert step.state is StepState.FAILED
        assert step.detail.startswith("Timeout:")
        assert mock_host.mutation_count == 0


class TestDryRun:
    def test_no_mutations_and_nothing_on_disk(self, web_plan, mock_host, tmp_state_dir):
        report = _runner(web_plan, mock_host, tmp_state_dir, dry_run=True).run()

        assert mock_host.mutation_count == 0
        assert report.dry_run
        assert report.checkpoint is None
        assert list(tmp_state_dir.iterdir()) == []
        assert report.exit_code == 0

    def test_dependents_are_planned(self, web_plan, mock_host, tmp_state_dir):
        report = _runner(web_plan, mock_host, tmp_state_dir, dry_run=True).run()
        assert all(s.state is StepState.PLANNED for s in report.steps)
        assert report.get("install-docker").detail.startswith("would apply:")
        assert report.get("write-config").detail == "would apply after install-docker"

    def test_satisfied_steps_reported(self, web_plan, mock_host, tmp_state_dir):
        mock_host.packages.add("docker.io")
        report = _runner(web_plan, mock_host, tmp_state_dir, dry_run=True).run()
        assert report.state_of("install-docker") is StepState.SATISFIED
        assert report.state_of("write-config") is StepState.PLANNED
        assert report.get("write-config").detail.startswith("would apply:")

    def test_ignores_held_lock(self, web_plan, mock_host, tmp_state_dir):
        with RunLock(tmp_state_dir / LOCK_FILE, "other-run"):
            report = _runner(web_plan, mock_host, tmp_state_dir, dry_run=True).run()
        assert report.exit_code == 0


class TestLocking:
    def test_held_lock_refuses_before_probing(self, web_plan, mock_host, tmp_state_dir):
        with RunLock(tmp_state_dir / LOCK_FILE, "other-run"), pytest.raises(ConcurrentRunDetected) as exc:
            _runner(web_plan, mock_host, tmp_state_dir).run()
        assert exc.value.owner_pid == os.getpid()
        assert mock_host.call_log == []
        assert list_runs(tmp_state_dir) == []

    def test_stale_lock_reclaimed(self, web_plan, mock_host, tmp_state_dir, caplog):
        (tmp_state_dir / LOCK_FILE).write_text(json.dumps({"pid": 99999999}), encoding="utf-8")
        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        assert report.exit_code == 0
        assert "stale" in caplog.text
        assert not (tmp_state_dir / LOCK_FILE).exists()


class TestTimeouts:
    def test_timeout_fails_step(self, web_plan, mock_host, tmp_state_dir):
        mock_host.set_failure("packages.install", error=CommandTimeout(["apt-get", "install", "docker.io"], 600))
        report = _runner(web_plan, mock_host, tmp_state_dir).run()
        step = report.get("install-docker")
        assert step.state is StepState.FAILED
        assert step.detail.startswith("Timeout")
        assert report.state_of("write-config") is StepState.BLOCKED


class TestCancellation:
    def test_cancel_between_steps(self, web_plan, mock_host, tmp_state_dir):
        runner = _runner(web_plan, mock_host, tmp_state_dir)
        runner.on_step = lambda s: runner.cancel()
        report = runner.run()

        assert report.cancelled
        assert report.status == "cancelled"
        assert report.exit_code == 1
        assert _states(report) == {
            "install-docker": StepState.APPLIED,
            "write-config": StepState.BLOCKED,
            "ensure-service": StepState.BLOCKED,
        }
        assert report.get("write-config").detail == "run cancelled"
        assert [r.step_id for r in report.rollbacks] == ["install-docker"]
        assert "docker.io" not in mock_host.packages

    def test_cancel_during_probe_skips_apply(self, web_plan, mock_host, tmp_state_dir, monkeypatch):
        runner = _runner(web_plan, mock_host, tmp_state_dir)
        real_probe = prober.probe

        def probe_then_cancel(step, host):
            runner.cancel()
            return real_probe(step, host)

        monkeypatch.setattr(prober, "probe", probe_then_cancel)
        report = runner.run()

        assert report.get("install-docker").detail == "run cancelled before apply"
        assert all(s.state is StepState.BLOCKED for s in report.steps)
        assert mock_host.mutation_count == 0

    def test_sigint_cancels(self, web_plan, mock_host, tmp_state_dir):
        before = signal.getsignal(signal.SIGINT)
        runner = _runner(web_plan, mock_host, tmp_state_dir,
                         on_step=lambda s: os.kill(os.getpid(), signal.SIGINT))
        report = runner.run()
        assert report.cancelled
        assert report.state_of("install-docker") is StepState.APPLIED
        assert signal.getsignal(signal.SIGINT) is before


class TestSecrets:
    def test_secret_values_never_recorded(self, mock_host, tmp_state_dir):
        plan = Plan.parse({
            "variables": {"DB_PASS": "hunter2"},
            "secrets": ["DB_PASS"],
            "steps": [{"id": "env", "kind": "FileWrite",
                       "params": {"path": "/opt/app/.env", "content_template": "PASS={DB_PASS}\n"}}],
        })
        mock_host.set_failure("filesystem.write", error=PermissionError("cannot write PASS=hunter2"))
        report = _runner(plan, mock_host, tmp_state_dir).run()

        assert "hunter2" not in report.get("env").detail
        assert "hunter2" not in Path(report.checkpoint).read_text(encoding="utf-8")
        assert "hunter2" not in (tmp_state_dir / "audit.ndjson").read_text(encoding="utf-8")


class TestRestartOn:
    def test_service_restarted_only_when_trigger_applied(self, mock_host, tmp_state_dir):
        plan = Plan.parse({"steps": [
            {"id": "site", "kind": "FileWrite", "params": {"path": "/etc/nginx/site", "content_template": "x"}},
            {"id": "nginx", "kind": "ServiceEnsure", "depends_on": ["site"],
             "params": {"name": "nginx", "restart_on": ["site"]}},
        ]})
        mock_host.running_services.add("nginx")
        mock_host.enabled_services.add("nginx")

        report = _runner(plan, mock_host, tmp_state_dir).run()
        assert report.state_of("nginx") is StepState.APPLIED
        assert len(mock_host.calls("services.restart")) == 1

        report = _runner(plan, mock_host, tmp_state_dir).run()
        assert report.state_of("nginx") is StepState.SATISFIED
        assert len(mock_host.calls("services.restart")) == 1


class TestComposeRedeploy:
    @staticmethod
    def _plan(image: str, *extra: dict) -> Plan:
        return Plan.parse({"variables": {"IMAGE": image}, "steps": [
            {"id": "compose-file", "kind": "FileWrite", "rollback": "auto",
             "params": {"path": "/opt/app/compose.yml",
                        "content_template": "services:\n  web:\n    image: {IMAGE}\n"}},
            {"id": "stack", "kind": "ComposeApply", "depends_on": ["compose-file"], "rollback": "auto",
             "params": {"compose_file": "/opt/app/compose.yml", "restart_on": ["compose-file"]}},
            *extra,
        ]})

    def test_changed_compose_file_is_rolled_out(self, mock_host, tmp_state_dir):
        report = _runner(self._plan("nginx:1.25"), mock_host, tmp_state_dir).run()
        assert _states(report) == {"compose-file": StepState.APPLIED, "stack": StepState.APPLIED}

        report = _runner(self._plan("nginx:1.25"), mock_host, tmp_state_dir).run()
        assert _states(report) == {"compose-file": StepState.SATISFIED, "stack": StepState.SATISFIED}
        assert len(mock_host.calls("containers.up")) == 1

        report = _runner(self._plan("nginx:1.27"), mock_host, tmp_state_dir).run()
        assert _states(report) == {"compose-file": StepState.APPLIED, "stack": StepState.APPLIED}
        assert "redeploy requested by compose-file" in report.get("stack").detail
        assert len(mock_host.calls("containers.up")) == 2

    def test_rollback_leaves_previously_running_stack_up(self, mock_host, tmp_state_dir):
        _runner(self._plan("nginx:1.25"), mock_host, tmp_state_dir).run()

        plan = self._plan("nginx:1.27", {
            "id": "tools", "kind": "PackageInstall", "depends_on": ["stack"], "params": {"packages": ["curl"]},
        })
        mock_host.set_failure("packages.install")
        report = _runner(plan, mock_host, tmp_state_dir).run()

        assert report.state_of("tools") is StepState.FAILED
        assert [r.step_id for r in report.rollbacks] == ["stack", "compose-file"]
        assert "left running" in report.rollbacks[0].detail
        assert mock_host.compose_running["/opt/app/compose.yml"] == {"web"}
        assert mock_host.calls("containers.down") == []
        assert b"nginx:1.25" in mock_host.files["/opt/app/compose.yml"][0]


class TestRunId:
    def test_format(self):
        run_id = generate_run_id()
        assert run_id.startswith("run-")
        assert len(run_id.split("-")) == 4
        assert generate_run_id() != run_id
