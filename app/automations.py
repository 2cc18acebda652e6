from __future__ import annotations

import copy
from typing import Any, Dict, List

from cron_schedule import resolve_schedule
from stack_spec import normalize_automation


# Seeded by the system; users may override or disable these but never delete them.
SYSTEM_AUTOMATIONS: List[Dict[str, Any]] = [
    {
        "id": "stack-health-check",
        "name": "Stack health check",
        "description": "Poll service status through the admin API.",
        "schedule": "every-15-minutes",
        "enabled": True,
        "core": True,
        "timeoutMs": 30000,
        "action": {"type": "api", "method": "GET", "path": "/stack/services", "body": None},
    },
    {
        "id": "memory-maintenance",
        "name": "Weekly memory maintenance",
        "description": "Ask the assistant to consolidate stored memories.",
        "schedule": "weekly-sunday-3am",
        "enabled": True,
        "core": True,
        "timeoutMs": 120000,
        "action": {
            "type": "prompt",
            "prompt": "Review stored memories, merge duplicates and drop entries that are no longer accurate.",
        },
    },
]

# Fields a user job replaces when it overrides a system job by id.
OVERRIDE_FIELDS = ("name", "description", "schedule", "enabled", "timeoutMs", "action")


def system_automation_ids() -> frozenset:
    return frozenset(job["id"] for job in SYSTEM_AUTOMATIONS)


def system_automation(job_id: str) -> dict | None:
    for job in SYSTEM_AUTOMATIONS:
        if job["id"] == job_id:
            return copy.deepcopy(job)
    return None


def merge_jobs(system_jobs: List[dict], user_jobs: List[dict]) -> List[dict]:
    """System jobs first (lowest precedence), then user jobs overriding by id.

    Each merged job records ``source`` (who last defined it) and ``origin``
    (who created it) and carries its resolved cron expression.
    """
    merged: Dict[str, dict] = {}
    order: List[str] = []
    for job in system_jobs:
        entry = normalize_automation(copy.deepcopy(job))
        entry.update({"core": True, "source": "system", "origin": "system"})
        merged[entry["id"]] = entry
        order.append(entry["id"])
    for job in user_jobs:
        entry = normalize_automation(copy.deepcopy(job))
        base = merged.get(entry["id"])
        if base is not None:
            for field in OVERRIDE_FIELDS:
                if field in entry:
                    base[field] = copy.deepcopy(entry[field])
            base["source"] = "user"
            continue
        entry.update({"source": "user", "origin": "user"})
        merged[entry["id"]] = entry
        order.append(entry["id"])
    jobs = []
    for job_id in order:
        job = merged[job_id]
        job["cron"] = resolve_schedule(job["schedule"])
        jobs.append(job)
    return jobs
