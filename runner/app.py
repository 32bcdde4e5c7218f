from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from bascule.deploy.coordinator import DeployOptions
from bascule.deploy.environments import LOGS_DIR, Environment, known_environments, resolve_environment, validate_version
from bascule.deploy.errors import DeployError, PreconditionError
from bascule.deploy.preflight import require_confirmation
from bascule.deploy.strategies import StrategyName
from bascule.operations import Operations, RollbackTarget
from bascule.store.models import DeploymentState

app = FastAPI(title="Bascule Runner UI", version="0.1.0")
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
operations = Operations()

# Dernière action lancée par environnement (mémoire du process uniquement)
_last_runs: Dict[str, Dict[str, Any]] = {}
_LOG_NAMES = {"deploy.log", "rollback.log"}


# --- Helpers ---
def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve(environment: str) -> Environment:
    try:
        return resolve_environment(environment)
    except PreconditionError:
        raise HTTPException(status_code=404, detail="Environnement inconnu")


def _record_run(environment: str, action: str, status: str, message: str = "", outcome: Optional[str] = None) -> None:
    _last_runs[environment] = {
        "action": action,
        "status": status,
        "message": message,
        "outcome": outcome,
        "updated_at": _now(),
    }


def _start_thread(target: Any, *, args: tuple) -> None:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()


def _run_tracked(environment: str, action: str, work: Any) -> None:
    _record_run(environment, action, "RUNNING")
    try:
        message = work()
    except DeployError as exc:
        _record_run(environment, action, "FAILED", str(exc), exc.outcome.value)
    except Exception as exc:
        # Pas d'appelant dans le thread : l'erreur est consignée pour l'UI
        _record_run(environment, action, "FAILED", f"Erreur inattendue: {exc}")
    else:
        _record_run(environment, action, "SUCCEEDED", message or "")


def _state_payload(state: Optional[DeploymentState]) -> Optional[Dict[str, Any]]:
    if state is None:
        return None
    return {
        "state_id": state.state_id,
        "captured_at": state.captured_at.isoformat(),
        "services": state.to_payload(),
    }


def _redirect(environment: str, status: str, message: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"/environments/{quote(environment)}?status={quote(status)}&message={quote(message)}",
        status_code=303,
    )


def _get_logs(environment: str) -> List[Path]:
    env_log_dir = LOGS_DIR / environment
    if not env_log_dir.exists():
        return []
    return sorted(p for p in env_log_dir.iterdir() if p.is_file() and p.name in _LOG_NAMES)


# --- Routes ---
@app.get("/", response_class=HTMLResponse)
def index(request: Request, status: str | None = None, message: str | None = None) -> HTMLResponse:
    store = operations.store
    rows = []
    for env in known_environments():
        latest = store.latest(env.name)
        rows.append(
            {
                "env": env,
                "latest": latest,
                "degraded": store.degraded_reason(env.name),
                "lock_owner": store.lock_owner(env.name),
                "last_run": _last_runs.get(env.name),
            }
        )
    context = {
        "rows": rows,
        "count": len(rows),
        "status_message": status,
        "status_detail": message,
    }
    return templates.TemplateResponse(request, "index.html", context)


@app.get("/environments/{environment}", response_class=HTMLResponse)
def environment_detail(
    request: Request, environment: str, status: str | None = None, message: str | None = None
) -> HTMLResponse:
    env = _resolve(environment)
    states, backups = operations.targets(env.name)
    context = {
        "env": env,
        "states": states,
        "backups": backups,
        "degraded": operations.store.degraded_reason(env.name),
        "lock_owner": operations.store.lock_owner(env.name),
        "last_run": _last_runs.get(env.name),
        "logs": _get_logs(env.name),
        "strategies": [s.value for s in StrategyName],
        "rollback_targets": [t.value for t in RollbackTarget],
        "status_message": status,
        "status_detail": message,
    }
    return templates.TemplateResponse(request, "environment.html", context)


@app.post("/environments/{environment}/deploy")
def trigger_deploy(
    environment: str,
    version: str = Form(...),
    strategy: str = Form("BlueGreen"),
    skip_tests: bool = Form(False),
    skip_backup: bool = Form(False),
    dry_run: bool = Form(False),
    force: bool = Form(False),
    confirm: bool = Form(False),
) -> RedirectResponse:
    env = _resolve(environment)
    try:
        cleaned = validate_version(version)
        strategy_name = StrategyName.parse(strategy)
        if not dry_run:
            require_confirmation(env, confirm, "Déploiement")
    except PreconditionError as exc:
        raise HTTPException(status_code=400, detail=exc.message)

    flags = DeployOptions(
        skip_tests=skip_tests,
        skip_backup=skip_backup,
        dry_run=dry_run,
        force=force,
        confirmed=confirm,
    )

    def _run() -> None:
        def _work() -> str:
            result = operations.deploy(env.name, cleaned, strategy_name, flags)
            if result.plan is not None:
                return " | ".join(result.plan.describe())
            return f"{cleaned} déployée en {result.duration:.0f}s (snapshot {result.state_id})"

        _run_tracked(env.name, "deploy", _work)

    _start_thread(_run, args=())
    return _redirect(env.name, "deploy_started", f"Déploiement lancé pour {cleaned} ({strategy_name.value})")


@app.post("/environments/{environment}/rollback")
def trigger_rollback(
    environment: str,
    target: str = Form("latest"),
    version: str = Form(""),
    confirm: bool = Form(False),
    dry_run: bool = Form(False),
) -> RedirectResponse:
    env = _resolve(environment)
    try:
        kind = RollbackTarget(target.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail="Cible de rollback inconnue")

    chosen_version = version.strip() or None
    if kind not in (RollbackTarget.VERSION, RollbackTarget.FULL):
        chosen_version = None
    try:
        if kind is RollbackTarget.VERSION or chosen_version:
            chosen_version = validate_version(chosen_version or "")
        if not dry_run and kind is not RollbackTarget.EMERGENCY:
            require_confirmation(env, confirm, "Rollback")
    except PreconditionError as exc:
        raise HTTPException(status_code=400, detail=exc.message)

    def _run() -> None:
        def _work() -> str:
            outcome = operations.rollback(env.name, kind, chosen_version, confirmed=confirm, dry_run=dry_run)
            if outcome.plan:
                return " | ".join(outcome.plan)
            parts = []
            if outcome.result is not None:
                parts.append(f"{len(outcome.result.restored)} service(s) restauré(s) depuis {outcome.result.target}")
                parts.extend(outcome.result.warnings)
            if outcome.database is not None:
                parts.append(f"base restaurée depuis {outcome.database.location_ref}")
            return " | ".join(parts)

        _run_tracked(env.name, f"rollback:{kind.value}", _work)

    _start_thread(_run, args=())
    return _redirect(env.name, "rollback_started", f"Rollback {kind.value} lancé")


@app.post("/environments/{environment}/cleanup")
def trigger_cleanup(environment: str, keep: int = Form(10), max_age_days: int = Form(7)) -> RedirectResponse:
    env = _resolve(environment)
    if keep < 1:
        raise HTTPException(status_code=400, detail="keep doit être supérieur ou égal à 1")

    def _run() -> None:
        def _work() -> str:
            removed = operations.cleanup(env.name, keep=keep, max_age_days=max_age_days)
            return f"{removed['states']} snapshot(s), {removed['backups']} backup(s) retiré(s)"

        _run_tracked(env.name, "cleanup", _work)

    _start_thread(_run, args=())
    return _redirect(env.name, "cleanup_started", "Nettoyage lancé")


@app.get("/environments/{environment}/logs/{log_name}", response_class=PlainTextResponse)
def view_log(environment: str, log_name: str) -> PlainTextResponse:
    if log_name not in _LOG_NAMES:
        raise HTTPException(status_code=404, detail="Log inconnu")

    env = _resolve(environment)
    log_path = LOGS_DIR / env.name / log_name
    if not log_path.exists():
        raise HTTPException(status_code=404, detail="Fichier de log introuvable")

    content = log_path.read_text(encoding="utf-8", errors="replace")
    return PlainTextResponse(content)


@app.get("/api/environments/{environment}/status")
def environment_status(environment: str) -> Dict[str, Any]:
    env = _resolve(environment)
    status = operations.status(env.name)
    return {
        "environment": env.name,
        "namespace": env.namespace,
        "degraded": status.degraded,
        "lock_owner": status.lock_owner,
        "current": None if status.current is None else status.current.to_payload(),
        "latest": _state_payload(status.latest),
        "error": status.error,
        "last_run": _last_runs.get(env.name),
    }


@app.get("/api/environments/{environment}/targets")
def rollback_targets(environment: str) -> Dict[str, Any]:
    env = _resolve(environment)
    states, backups = operations.targets(env.name)
    return {
        "environment": env.name,
        "states": [_state_payload(state) for state in states],
        "backups": [
            {
                "backup_id": record.backup_id,
                "kind": record.kind,
                "created_at": record.created_at.isoformat(),
                "location_ref": record.location_ref,
            }
            for record in backups
        ],
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
