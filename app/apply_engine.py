"""Compute the impact of a spec change and optionally roll it out through the runner."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List

import anyio

from impact_plan import compute_impact, diff_artifact_files
from stack_spec import spec_revision

from app.compose_runner import UnconfiguredRunner
from app.secrets import dangling_references, missing_secret_values
from app.stack_manager import StackManager, file_digests


logger = logging.getLogger("stackpilot.apply")

# order in which a single service's operations are issued
OPERATION_ORDER = ("down", "up", "restart", "reload")


@dataclass
class ApplyError(Exception):
    code: str
    message: str
    detail: dict | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


def plan_waves(services: List[str], dependencies: Dict[str, List[str]]) -> List[List[str]]:
    """Group services so each wave only depends on earlier waves."""
    remaining = set(services)
    waves: List[List[str]] = []
    while remaining:
        ready = sorted(
            svc for svc in remaining if not any(dep in remaining for dep in dependencies.get(svc, []))
        )
        if not ready:
            # dependency cycle; fall back to one service at a time
            ready = [sorted(remaining)[0]]
        waves.append(ready)
        remaining.difference_update(ready)
    return waves


def service_operations(impact: Dict[str, List[str]]) -> Dict[str, List[str]]:
    ops: Dict[str, List[str]] = {}
    for action in OPERATION_ORDER:
        for svc in impact.get(action, []):
            ops.setdefault(svc, []).append(action)
    return ops


class ApplyEngine:
    def __init__(self, manager: StackManager, runner: Any = None) -> None:
        self.manager = manager
        self.runner = runner or UnconfiguredRunner()

    def _prepare(self, execute: bool) -> dict:
        with self.manager.locked():
            spec, values = self.manager.read_state()
            dangling = dangling_references(spec)
            if dangling:
                raise ApplyError(
                    "secret_reference_invalid:" + ",".join(dangling),
                    "Spec references secrets that are not registered",
                    {"names": dangling},
                )
            missing = missing_secret_values(spec, values)
            if execute and missing:
                logger.warning("apply_rejected missing_secrets=%s", ",".join(missing))
                raise ApplyError(
                    "secret_validation_failed:" + ",".join(missing),
                    "Referenced secrets have no value",
                    {"missing": missing},
                )
            artifacts, files = self.manager.build_files(spec, values)
            digests = file_digests(files)
            applied = self.manager.applied_record()
            changes = diff_artifact_files(applied["files"], digests, applied["services"], artifacts["serviceDigests"])
            impact = compute_impact(changes)
            prepared = {
                "revision": spec_revision(spec),
                "changes": changes,
                "impact": impact,
                "missingSecrets": missing,
                "dependencies": artifacts["dependencies"],
                "services": artifacts["services"],
                "serviceDigests": artifacts["serviceDigests"],
                "digests": digests,
            }
            if execute:
                prepared["staged"] = self.manager.stage(files)
            return prepared

    async def apply(self, execute: bool = False) -> dict:
        """Preview (default) or execute an apply.

        Secret validation happens before anything is written, so a rejected
        apply leaves the staged artifacts untouched.
        """
        prepared = await anyio.to_thread.run_sync(self._prepare, execute)
        result = {
            "ok": True,
            "mode": "execute" if execute else "preview",
            "revision": prepared["revision"],
            "changes": prepared["changes"],
            "impact": prepared["impact"],
            "missingSecrets": prepared["missingSecrets"],
            "operations": [],
            "warnings": [],
        }
        if prepared["impact"]["deferred"]:
            result["warnings"].append(
                {
                    "code": "restart_deferred",
                    "message": "Restart these services manually; the admin API does not restart itself",
                    "path": None,
                    "detail": {"services": prepared["impact"]["deferred"]},
                }
            )
            logger.warning("apply_restart_deferred services=%s", ",".join(prepared["impact"]["deferred"]))
        if not execute:
            if prepared["missingSecrets"]:
                result["warnings"].append(
                    {
                        "code": "missing_secret_values",
                        "message": "Apply will fail until these secrets have values",
                        "path": None,
                        "detail": {"missing": prepared["missingSecrets"]},
                    }
                )
            logger.info("apply_preview revision=%s impact=%s", prepared["revision"], prepared["impact"])
            return result
        result["staged"] = prepared["staged"]
        if not getattr(self.runner, "configured", True):
            result["warnings"].append(
                {"code": "runner_not_configured", "message": "Artifacts staged; no runner to apply them", "path": None, "detail": None}
            )
            logger.warning("apply_runner_not_configured revision=%s", prepared["revision"])
            return result
        if hasattr(self.runner, "allow"):
            self.runner.allow(prepared["services"])
        result["operations"] = await self._execute(prepared["impact"], prepared["dependencies"])
        await anyio.to_thread.run_sync(self.manager.record_applied, prepared["digests"], prepared["serviceDigests"], prepared["revision"])
        logger.info("apply_completed revision=%s operations=%s", prepared["revision"], len(result["operations"]))
        return result

    async def _execute(self, impact: Dict[str, List[str]], dependencies: Dict[str, List[str]]) -> List[dict]:
        ops = service_operations(impact)
        done: List[dict] = []
        stops = [svc for svc in ops if ops[svc] == ["down"]]
        waves = ([sorted(stops)] if stops else []) + plan_waves([svc for svc in ops if svc not in stops], dependencies)
        for wave in waves:
            outcomes = await asyncio.gather(*(self._run_service(svc, ops[svc]) for svc in wave))
            failures = []
            for outcome in outcomes:
                done.extend(outcome)
                failures.extend(item for item in outcome if not item["ok"])
            if failures:
                logger.warning("apply_runner_failed failures=%s", ",".join(f"{f['action']}:{f['service']}" for f in failures))
                raise ApplyError(
                    "runner_failed",
                    "Orchestration runner reported failures",
                    {"failures": failures, "operations": done},
                )
        return done

    async def _run_service(self, service: str, actions: List[str]) -> List[dict]:
        outcome = []
        for action in actions:
            res = await getattr(self.runner, action)(service)
            entry = {
                "service": service,
                "action": action,
                "ok": bool(res.get("ok")),
                "error": res.get("error"),
                "stderr": res.get("stderr") or "",
            }
            outcome.append(entry)
            if not entry["ok"]:
                break
        return outcome
