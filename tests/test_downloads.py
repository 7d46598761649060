import unittest

from foundry_gateway.downloads import DownloadOrchestrator, JobState, is_transient_failure
from foundry_gateway.events import EventChannel
from tests.fakes import FAST_CONFIG, FakeControlPlane

SERVER_500 = "Exception: Response status code does not indicate success: 500 (Internal Server Error)."


def logs_of(channel):
    return [e["log"] for e in channel.history if "log" in e]


def errors_of(channel):
    return [e for e in channel.history if "error" in e]


class TransientDetectionTests(unittest.TestCase):
    def test_signatures(self):
        self.assertTrue(is_transient_failure(SERVER_500))
        self.assertTrue(is_transient_failure("upstream said INTERNAL SERVER ERROR"))
        self.assertFalse(is_transient_failure("No space left on device"))
        self.assertFalse(is_transient_failure(""))
        self.assertFalse(is_transient_failure(None))


class DownloadOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.cp = FakeControlPlane()
        self.orchestrator = DownloadOrchestrator(self.cp, FAST_CONFIG)
        self.channel = EventChannel()

    async def test_transient_failure_then_success(self):
        self.cp.download_scripts["phi"] = [
            ([("stderr", SERVER_500)], 1),
            ([("stdout", "Downloading model.onnx"), ("stdout", "100%")], 0),
        ]

        jobs = await self.orchestrator.start_downloads(["phi"], self.channel)

        self.assertEqual(jobs[0].state, JobState.SUCCEEDED)
        self.assertEqual(jobs[0].retries, 1)
        self.assertEqual(jobs[0].attempt, 2)
        logs = logs_of(self.channel)
        self.assertEqual(logs.count("Retry succeeded for phi"), 1)
        self.assertIn("Detected server 500 for phi, retry attempt 1 of 3...", logs)
        self.assertTrue(any(l.startswith("Cache check OK") for l in logs))
        self.assertEqual(self.cp.issued("cache", "list"), [("cache", "list")])
        self.assertEqual(errors_of(self.channel), [])
        self.assertEqual(self.channel.history[-1], {"done": True})

    async def test_permanent_failure_is_not_retried(self):
        self.cp.download_scripts["phi"] = [([("stderr", "No space left on device")], 2)]

        jobs = await self.orchestrator.start_downloads(["phi"], self.channel)

        self.assertEqual(jobs[0].state, JobState.FAILED)
        self.assertEqual(jobs[0].retries, 0)
        self.assertEqual(
            errors_of(self.channel),
            [{"error": "Download failed for phi (exit code 2)", "stderr": "No space left on device\n"}],
        )
        self.assertEqual(len(self.cp.issued("model", "download")), 1)
        self.assertFalse(any("retry" in l.lower() for l in logs_of(self.channel)))
        self.assertEqual(self.channel.history[-1], {"done": True})

    async def test_exhausted_retries_report_first_stderr(self):
        first = SERVER_500 + " first"
        self.cp.download_scripts["phi"] = [([("stderr", first)], 1)] + [
            ([("stderr", SERVER_500 + " again")], 1) for _ in range(3)
        ]

        jobs = await self.orchestrator.start_downloads(["phi"], self.channel)

        self.assertEqual(jobs[0].state, JobState.FAILED)
        self.assertEqual(jobs[0].retries, 3)
        self.assertEqual(len(self.cp.issued("model", "download")), 4)
        self.assertEqual(
            errors_of(self.channel),
            [{"error": "Download failed for phi after 3 retries", "stderr": first + "\n"}],
        )
        logs = logs_of(self.channel)
        self.assertIn("Retry 3 for phi failed (exit code 1)", logs)
        self.assertNotIn("Retry succeeded for phi", logs)

    async def test_progress_lines_never_become_logs(self):
        self.cp.download_scripts["phi"] = [
            (
                [
                    ("stdout", "Downloading model.onnx"),
                    ("stdout", "10%"),
                    ("stdout", "Downloading model.onnx  20.5 %"),
                ],
                0,
            )
        ]

        await self.orchestrator.start_downloads(["phi"], self.channel)

        progress = [e for e in self.channel.history if "progress" in e]
        self.assertEqual(
            progress,
            [{"progress": 20.5, "progressLine": "Downloading model.onnx  20.5 %", "alias": "phi"}],
        )
        logs = logs_of(self.channel)
        self.assertFalse(any("%" in l for l in logs))
        self.assertIn({"log": "Downloading model.onnx", "alias": "phi"}, self.channel.history)
        self.assertIn("Download completed: phi", logs)

    async def test_unchanged_progress_is_not_resent(self):
        self.cp.download_scripts["phi"] = [
            (
                [
                    ("stdout", "10%"),
                    ("sleep", 0.12),
                    ("stdout", "10%"),
                    ("sleep", 0.12),
                    ("stdout", "30%"),
                ],
                0,
            )
        ]

        await self.orchestrator.start_downloads(["phi"], self.channel)

        percents = [e["progress"] for e in self.channel.history if "progress" in e]
        self.assertEqual(percents, [10.0, 30.0])

    async def test_aliases_run_one_after_another(self):
        self.cp.download_scripts["a"] = [([("stderr", "broken")], 1)]
        self.cp.download_scripts["b"] = [([("stdout", "fetching b")], 0)]

        jobs = await self.orchestrator.start_downloads(["a", "b"], self.channel)

        self.assertEqual([j.state for j in jobs], [JobState.FAILED, JobState.SUCCEEDED])
        self.assertEqual(
            self.cp.issued("model", "download"),
            [("model", "download", "a"), ("model", "download", "b")],
        )
        logs = logs_of(self.channel)
        self.assertLess(logs.index("Starting download for a"), logs.index("Starting download for b"))
        error_at = self.channel.history.index(errors_of(self.channel)[0])
        self.assertLess(error_at, self.channel.history.index({"log": "Starting download for b"}))
        self.assertEqual(self.channel.history[-1], {"done": True})
        self.assertIn(("b", "b-instruct-generic-cpu"), self.cp.cached)


if __name__ == "__main__":
    unittest.main()
