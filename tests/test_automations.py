import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.automations import SYSTEM_AUTOMATIONS, merge_jobs, system_automation, system_automation_ids


class TestAutomations(unittest.TestCase):
    def test_system_jobs_resolve_presets(self) -> None:
        jobs = merge_jobs(SYSTEM_AUTOMATIONS, [])
        by_id = {job["id"]: job for job in jobs}
        self.assertEqual(by_id["stack-health-check"]["cron"], "*/15 * * * *")
        self.assertEqual(by_id["memory-maintenance"]["cron"], "0 3 * * 0")
        for job in jobs:
            self.assertEqual((job["source"], job["origin"], job["core"]), ("system", "system", True))

    def test_user_job_overrides_system_job_by_id(self) -> None:
        override = {
            "id": "memory-maintenance",
            "name": "Nightly memory maintenance",
            "schedule": "daily",
            "enabled": False,
            "action": {"type": "prompt", "prompt": "tidy up"},
        }
        jobs = merge_jobs(SYSTEM_AUTOMATIONS, [override])
        job = [item for item in jobs if item["id"] == "memory-maintenance"][0]
        self.assertEqual(job["source"], "user")
        self.assertEqual(job["origin"], "system")
        self.assertTrue(job["core"])
        self.assertFalse(job["enabled"])
        self.assertEqual(job["cron"], "0 0 * * *")
        self.assertEqual(job["action"]["prompt"], "tidy up")
        self.assertEqual(len(jobs), len(SYSTEM_AUTOMATIONS))

    def test_user_jobs_follow_system_jobs(self) -> None:
        user = {"id": "digest", "schedule": "0 8 * * 1-5", "script": "echo hi"}
        jobs = merge_jobs(SYSTEM_AUTOMATIONS, [user])
        self.assertEqual(jobs[-1]["id"], "digest")
        self.assertEqual((jobs[-1]["source"], jobs[-1]["origin"]), ("user", "user"))
        self.assertEqual(jobs[-1]["action"], {"type": "shell", "command": ["sh", "-c", "echo hi"]})
        self.assertEqual(jobs[-1]["cron"], "0 8 * * 1-5")

    def test_merge_does_not_mutate_inputs(self) -> None:
        user = {"id": "memory-maintenance", "schedule": "daily", "enabled": False, "prompt": "x"}
        merge_jobs(SYSTEM_AUTOMATIONS, [user])
        self.assertTrue(system_automation("memory-maintenance")["enabled"])
        self.assertNotIn("source", user)

    def test_system_lookup(self) -> None:
        self.assertEqual(system_automation_ids(), frozenset({"stack-health-check", "memory-maintenance"}))
        self.assertIsNone(system_automation("digest"))
        copy_a = system_automation("stack-health-check")
        copy_a["enabled"] = False
        self.assertTrue(system_automation("stack-health-check")["enabled"])


if __name__ == "__main__":
    unittest.main()
