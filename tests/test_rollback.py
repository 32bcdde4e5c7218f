import pytest
from conftest import Harness, make_backend, make_env

from bascule.deploy.errors import (
    BackupFailed,
    DatabaseRestoreFailed,
    Outcome,
    PreconditionError,
    RollbackFailed,
    SnapshotNotFound,
)
from bascule.rollback.engine import RollbackMode
from bascule.services.notify import Severity
from bascule.store.models import DeploymentState, ServiceRecord


def _snapshot(harness, version="1.2.2", replicas=3):
    env = harness.env
    return harness.store.save(
        DeploymentState(
            environment=env.name,
            services=tuple(ServiceRecord(s, env.image_for(s, version), replicas, replicas) for s in env.services),
        )
    )


@pytest.fixture
def production(tmp_path):
    env = make_env("production", services=("auth-service", "api-gateway"))
    return Harness(tmp_path, env, make_backend(env, version="1.2.3"))


def test_emergency_rollback_tolerates_health_timeout(production):
    env, backend = production.env, production.backend
    _snapshot(production, "v1.2.2", replicas=2)
    backend.never_ready.add("api-gateway")

    result = production.rollback.emergency_rollback(env)

    assert result.mode is RollbackMode.EMERGENCY
    assert backend.image("auth-service") == env.image_for("auth-service", "v1.2.2")
    assert backend.image("api-gateway") == env.image_for("api-gateway", "v1.2.2")
    assert len(result.warnings) == 1
    assert "api-gateway" in result.warnings[0]
    assert production.notifier.severities() == [Severity.CRITICAL, Severity.HIGH]
    assert production.store.degraded_reason(env.name) is None


def test_emergency_health_wait_is_bounded_by_its_timeout(production):
    env, backend = production.env, production.backend
    _snapshot(production)
    backend.failing_probes.update(env.services)

    result = production.rollback.emergency_rollback(env)

    probes = [args[0] for m, args, _ in backend.calls if m == "exec_probe"]
    assert probes == list(env.services)
    assert len(result.warnings) == 2


def test_emergency_rollback_forces_recreate_first(production):
    env, backend = production.env, production.backend
    _snapshot(production)

    production.rollback.emergency_rollback(env)

    for service in env.services:
        assert backend.touched(service)[:2] == ["set_update_strategy", "set_image"]
        assert backend.deployments[service]["strategy"] == "Recreate"


def test_emergency_rollback_continues_past_failing_service(production):
    env, backend = production.env, production.backend
    _snapshot(production)
    backend.failing_services.add("auth-service")

    with pytest.raises(RollbackFailed) as excinfo:
        production.rollback.emergency_rollback(env)

    assert excinfo.value.service == "auth-service"
    assert backend.image("api-gateway") == env.image_for("api-gateway", "1.2.2")
    assert production.store.degraded_reason(env.name)


def test_emergency_rollback_without_snapshot(production):
    with pytest.raises(SnapshotNotFound):
        production.rollback.emergency_rollback(production.env)
    assert production.backend.calls == []


def test_rollback_to_state_is_idempotent(harness):
    env, backend = harness.env, harness.backend
    state = _snapshot(harness, "1.2.0", replicas=2)

    harness.rollback.rollback_to_state(env, state)
    first = [backend.describe(s) for s in env.services]
    harness.rollback.rollback_to_state(env, state)
    second = [backend.describe(s) for s in env.services]

    assert first == second
    assert [r.image for r in second] == [env.image_for(s, "1.2.0") for s in env.services]
    assert all(r.desired_replicas == 2 for r in second)


def test_normal_rollback_failure_escalates(harness):
    env, backend = harness.env, harness.backend
    state = _snapshot(harness, "1.2.0")
    backend.unhealthy_images.add(env.image_for("auth-service", "1.2.0"))

    with pytest.raises(RollbackFailed) as excinfo:
        harness.rollback.rollback_to_state(env, state, RollbackMode.NORMAL)

    assert excinfo.value.outcome is Outcome.ROLLBACK_FAILED
    assert excinfo.value.service == "auth-service"
    assert backend.touched("station-service") == []
    assert "auth-service" in harness.store.degraded_reason(env.name)
    assert harness.notifier.severities() == [Severity.CRITICAL]


def test_rollback_to_last_state_without_history(harness):
    with pytest.raises(SnapshotNotFound):
        harness.rollback.rollback_to_last_state(harness.env)


def test_rollback_to_version_checks_registry(harness):
    env, backend = harness.env, harness.backend
    harness.registry.missing.add(("auth-service", "1.1.0"))

    with pytest.raises(PreconditionError, match="auth-service"):
        harness.rollback.rollback_to_version(env, "1.1.0")
    assert backend.mutations() == []

    result = harness.rollback.rollback_to_version(env, "1.2.1")
    assert result.restored == list(env.services)
    assert backend.image("station-service") == env.image_for("station-service", "1.2.1")
    # Les réplicas ne sont pas modifiés hors snapshot
    assert not [m for m, _, _ in backend.mutations() if m == "scale"]


def test_emergency_version_rollback_skips_registry(harness):
    harness.registry.missing.add(("auth-service", "1.1.0"))

    harness.rollback.rollback_to_version(harness.env, "1.1.0", RollbackMode.EMERGENCY)

    assert harness.registry.checked == []
    assert harness.backend.image("auth-service") == harness.env.image_for("auth-service", "1.1.0")


def test_rollback_clears_degraded_flag(harness):
    state = _snapshot(harness)
    harness.store.mark_degraded(harness.env.name, "échec précédent")

    harness.rollback.rollback_to_state(harness.env, state)

    assert harness.store.degraded_reason(harness.env.name) is None


def test_database_rollback_takes_safety_backup_first(harness):
    env = harness.env
    target = harness.backups.backup(env)

    restored = harness.rollback.rollback_database(env)

    assert restored.backup_id == target.backup_id
    assert [b.kind for b in harness.backup_service.taken] == ["pre-deploy", "pre-rollback"]
    assert harness.backup_service.restored == [restored]


def test_database_rollback_restores_safety_backup_on_failure(harness):
    env = harness.env
    harness.backups.backup(env)
    harness.backup_service.restore_failures = 1

    with pytest.raises(DatabaseRestoreFailed) as excinfo:
        harness.rollback.rollback_database(env)

    assert excinfo.value.outcome is Outcome.ROLLED_BACK
    assert [b.kind for b in harness.backup_service.restored] == ["pre-rollback"]
    assert harness.store.degraded_reason(env.name) is None


def test_database_rollback_double_failure_is_critical(harness):
    env = harness.env
    harness.backups.backup(env)
    harness.backup_service.restore_failures = 2

    with pytest.raises(DatabaseRestoreFailed) as excinfo:
        harness.rollback.rollback_database(env)

    assert excinfo.value.outcome is Outcome.ROLLBACK_FAILED
    assert harness.store.degraded_reason(env.name)
    assert Severity.CRITICAL in harness.notifier.severities()


def test_database_rollback_aborts_without_safety_backup(harness):
    env = harness.env
    harness.backups.backup(env)
    harness.backup_service.fail_backup = True

    with pytest.raises(BackupFailed):
        harness.rollback.rollback_database(env)

    assert harness.backup_service.restored == []


def test_database_rollback_requires_a_backup(harness):
    with pytest.raises(SnapshotNotFound):
        harness.rollback.rollback_database(harness.env)
