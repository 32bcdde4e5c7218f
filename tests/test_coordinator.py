import pytest
from conftest import Harness, make_backend, make_env

from bascule.deploy.coordinator import AttemptStatus, DeployOptions
from bascule.deploy.errors import (
    BackupFailed,
    DeployFailed,
    LockUnavailable,
    Outcome,
    PreconditionError,
    PreflightFailed,
    RollbackFailed,
    StrategyFailed,
)
from bascule.deploy.polling import CancelToken
from bascule.deploy.strategies import StrategyName
from bascule.services.notify import Severity

VERSION = "v1.2.3"


def test_rolling_deploy_to_staging(harness):
    env, backend = harness.env, harness.backend

    result = harness.coordinator.deploy(env, VERSION, "rolling")

    assert all(backend.image(s) == env.image_for(s, VERSION) for s in env.services)
    assert len(harness.store.history(env.name)) == 1
    assert result.state_id == harness.store.latest(env.name).state_id
    assert result.attempt.status is AttemptStatus.SUCCEEDED
    assert result.attempt.backup_id is not None
    assert harness.notifier.severities() == [Severity.INFO]
    assert "en" in harness.notifier.sent[0][2]
    assert harness.tests.runs == [(env.name, VERSION)]
    assert harness.store.lock_owner(env.name) is None


def test_snapshot_is_recorded_before_first_mutation(harness):
    harness.coordinator.deploy(harness.env, VERSION, StrategyName.BLUE_GREEN)

    snapshot = harness.store.latest(harness.env.name)
    first_mutation = harness.backend.mutations()[0][2]
    assert snapshot.captured_at <= first_mutation
    assert snapshot.images() == {s: harness.env.image_for(s, "1.2.2") for s in harness.env.services}


def test_failed_health_check_rolls_back_every_service(harness):
    env, backend = harness.env, harness.backend
    originals = {s: backend.image(s) for s in env.services}
    backend.unhealthy_images.add(env.image_for("auth-service", VERSION))

    with pytest.raises(DeployFailed) as excinfo:
        harness.coordinator.deploy(env, VERSION, "blue-green")

    error = excinfo.value
    assert isinstance(error, StrategyFailed)
    assert error.service == "auth-service"
    assert error.outcome is Outcome.ROLLED_BACK
    assert error.attempt.status is AttemptStatus.ROLLED_BACK
    assert {s: backend.image(s) for s in env.services} == originals
    new_image_calls = [args for m, args, _ in backend.mutations() if m == "set_image" and args[1].endswith(VERSION)]
    assert [args[0] for args in new_image_calls] == ["api-gateway", "auth-service"]
    assert Severity.HIGH in harness.notifier.severities()
    assert harness.store.degraded_reason(env.name) is None


def test_backup_failure_stops_before_cluster(harness):
    harness.backup_service.fail_backup = True

    with pytest.raises(BackupFailed) as excinfo:
        harness.coordinator.deploy(harness.env, VERSION, "rolling")

    assert excinfo.value.outcome is Outcome.UNCHANGED
    assert harness.backend.calls == []
    assert harness.store.history(harness.env.name) == []


@pytest.mark.parametrize("environment, version", [("staging", "1.2"), ("staging", "latest"), ("qa", "1.2.3")])
def test_precondition_failure_never_touches_cluster(harness, environment, version):
    with pytest.raises(PreconditionError):
        harness.coordinator.deploy(environment, version, "rolling")

    assert harness.backend.calls == []


def test_missing_image_is_a_precondition(harness):
    harness.registry.missing.add(("station-service", VERSION))

    with pytest.raises(PreconditionError, match="station-service"):
        harness.coordinator.deploy(harness.env, VERSION, "rolling")

    assert harness.backend.calls == []


def test_canary_requires_metrics_source(harness):
    harness.coordinator.analyzer = None

    with pytest.raises(PreconditionError, match="canary"):
        harness.coordinator.deploy(harness.env, VERSION, "canary")

    assert harness.backend.calls == []


def test_dry_run_reports_plan_without_writes(harness):
    env, backend = harness.env, harness.backend

    result = harness.coordinator.deploy(env, VERSION, "canary", DeployOptions(dry_run=True, skip_tests=True))

    assert result.dry_run is True
    assert result.plan.strategy is StrategyName.CANARY
    assert result.plan.services == env.services
    assert result.plan.target_images["auth-service"] == env.image_for("auth-service", VERSION)
    assert result.plan.current_images["auth-service"] == env.image_for("auth-service", "1.2.2")
    assert any("canary" in line.lower() for line in result.plan.describe())
    assert backend.mutations() == []
    assert harness.store.history(env.name) == []
    assert harness.backup_service.taken == []
    assert harness.tests.runs == []


def test_production_requires_confirmation(tmp_path):
    env = make_env("prod")
    harness = Harness(tmp_path, env, make_backend(env))

    with pytest.raises(PreconditionError, match="confirmation"):
        harness.coordinator.deploy(env, VERSION, "rolling")
    assert harness.backend.calls == []

    harness.coordinator.deploy(env, VERSION, "rolling", DeployOptions(confirmed=True))
    assert harness.backend.image("api-gateway") == env.image_for("api-gateway", VERSION)


def test_failing_tests_abort_unless_forced(harness):
    harness.tests.fail = True

    with pytest.raises(PreflightFailed):
        harness.coordinator.deploy(harness.env, VERSION, "rolling")
    assert harness.backend.mutations() == []

    result = harness.coordinator.deploy(harness.env, VERSION, "rolling", DeployOptions(force=True))
    assert result.attempt.status is AttemptStatus.SUCCEEDED


def test_skip_flags_bypass_tests_and_backup(harness):
    harness.coordinator.deploy(harness.env, VERSION, "rolling", DeployOptions(skip_tests=True, skip_backup=True))

    assert harness.tests.runs == []
    assert harness.backup_service.taken == []
    assert len(harness.store.history(harness.env.name)) == 1


def test_force_leaves_partial_state_without_rollback(harness):
    env, backend = harness.env, harness.backend
    backend.unhealthy_images.add(env.image_for("auth-service", VERSION))

    with pytest.raises(StrategyFailed) as excinfo:
        harness.coordinator.deploy(env, VERSION, "blue-green", DeployOptions(force=True))

    assert excinfo.value.outcome is Outcome.PARTIAL
    assert excinfo.value.attempt.status is AttemptStatus.FAILED
    assert backend.image("api-gateway") == env.image_for("api-gateway", VERSION)
    assert backend.image("station-service") == env.image_for("station-service", "1.2.2")


def test_failed_rollback_marks_environment_degraded(harness):
    env, backend = harness.env, harness.backend
    backend.unhealthy_images.add(env.image_for("auth-service", VERSION))
    # La version d'origine ne redémarre pas non plus
    backend.unhealthy_images.add(env.image_for("api-gateway", "1.2.2"))

    with pytest.raises(RollbackFailed) as excinfo:
        harness.coordinator.deploy(env, VERSION, "blue-green")

    assert excinfo.value.outcome is Outcome.ROLLBACK_FAILED
    assert excinfo.value.attempt.status is AttemptStatus.FAILED
    assert harness.store.degraded_reason(env.name)
    assert Severity.CRITICAL in harness.notifier.severities()
    assert harness.store.lock_owner(env.name) is None


def test_successful_deploy_clears_degraded_flag(harness):
    harness.store.mark_degraded(harness.env.name, "rollback précédent en échec")

    harness.coordinator.deploy(harness.env, VERSION, "rolling")

    assert harness.store.degraded_reason(harness.env.name) is None


def test_locked_environment_is_refused(harness):
    harness.store.acquire_lock(harness.env.name, "autre-operateur", 600)

    with pytest.raises(LockUnavailable):
        harness.coordinator.deploy(harness.env, VERSION, "rolling")

    assert harness.backend.calls == []
    assert harness.backup_service.taken == []


def test_second_deploy_from_same_owner_is_refused(harness):
    env = harness.env

    with harness.store.hold(env.name, harness.coordinator.owner, 600) as token:
        with pytest.raises(LockUnavailable):
            harness.coordinator.deploy(env, VERSION, "rolling")

        assert harness.store.lock_owner(env.name) == token

    assert harness.backend.mutations() == []
    assert harness.store.lock_owner(env.name) is None


def test_cancelled_deploy_is_rolled_back(harness):
    env, backend = harness.env, harness.backend
    originals = {s: backend.image(s) for s in env.services}
    token = CancelToken()
    wait_for_rollout = backend.wait_for_rollout

    def _cancel_during_rollout(service, timeout):
        token.cancel("arrêt opérateur")
        return wait_for_rollout(service, timeout)

    backend.wait_for_rollout = _cancel_during_rollout

    with pytest.raises(StrategyFailed) as excinfo:
        harness.coordinator.deploy(env, VERSION, "rolling", cancel=token)

    assert excinfo.value.outcome is Outcome.ROLLED_BACK
    assert "interrompu" in str(excinfo.value)
    assert excinfo.value.attempt.status is AttemptStatus.ROLLED_BACK
    assert {s: backend.image(s) for s in env.services} == originals
    new_images = [args[0] for m, args, _ in backend.mutations() if m == "set_image" and args[1].endswith(VERSION)]
    assert new_images == ["api-gateway"]
    assert Severity.HIGH in harness.notifier.severities()


def test_canary_deploy_end_to_end(harness):
    env, backend = harness.env, harness.backend

    harness.coordinator.deploy(env, VERSION, "canary")

    assert all(backend.image(s) == env.image_for(s, VERSION) for s in env.services)
    assert all(backend.replicas(s) == 3 for s in env.services)
    assert not [name for name in backend.deployments if name.endswith("-canary")]
