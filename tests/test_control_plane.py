import sys
import unittest

from foundry_gateway.control_plane import (
    ControlPlaneClient,
    LineBuffer,
    StreamExit,
    StreamLine,
)
from foundry_gateway.errors import ControlPlaneError


class LineBufferTests(unittest.TestCase):
    def test_partial_lines_wait_for_break(self):
        buf = LineBuffer()
        self.assertEqual(buf.feed("Downloading mod"), [])
        self.assertEqual(buf.feed("el.onnx\n 10%"), ["Downloading model.onnx"])
        self.assertEqual(buf.feed("\r 20%\r"), ["10%", "20%"])
        self.assertEqual(buf.flush(), [])

    def test_blank_lines_dropped_and_trimmed(self):
        buf = LineBuffer()
        self.assertEqual(buf.feed("  a  \n\n\r\n   \nb\r\n"), ["a", "b"])

    def test_flush_returns_tail(self):
        buf = LineBuffer()
        buf.feed("done\nlast words ")
        self.assertEqual(buf.flush(), ["last words"])
        self.assertEqual(buf.flush(), [])


def python_client():
    # the interpreter stands in for the CLI: args become `-c <script>`
    return ControlPlaneClient(cli_path=sys.executable, mirror_output=False)


class RunOnceTests(unittest.IsolatedAsyncioTestCase):
    async def test_captures_stdout_and_stderr(self):
        result = await python_client().run_once(
            "-c", "import sys; print('hello'); print('warn', file=sys.stderr)"
        )
        self.assertEqual(result.stdout.strip(), "hello")
        self.assertEqual(result.stderr.strip(), "warn")
        self.assertEqual(result.exit_code, 0)

    async def test_non_zero_exit_carries_output(self):
        with self.assertRaises(ControlPlaneError) as ctx:
            await python_client().run_once(
                "-c", "import sys; print('Deleted model x'); sys.stderr.write('boom'); sys.exit(3)"
            )
        self.assertEqual(ctx.exception.exit_code, 3)
        self.assertIn("Deleted model x", ctx.exception.stdout)
        self.assertEqual(ctx.exception.stderr, "boom")

    async def test_missing_binary(self):
        client = ControlPlaneClient(cli_path="/nonexistent/foundry-cli", mirror_output=False)
        with self.assertRaises(ControlPlaneError) as ctx:
            await client.run_once("service", "list")
        self.assertIsNone(ctx.exception.exit_code)
        self.assertIn("could not start", str(ctx.exception))


class RunStreamedTests(unittest.IsolatedAsyncioTestCase):
    async def test_lines_per_channel_then_exit(self):
        script = (
            "import sys\n"
            "sys.stdout.write('first\\nsec'); sys.stdout.flush()\n"
            "sys.stdout.write('ond\\n  \\n12%\\rtail'); sys.stdout.flush()\n"
            "sys.stderr.write('oops\\n')\n"
        )
        items = [item async for item in python_client().run_streamed("-c", script)]

        self.assertIsInstance(items[-1], StreamExit)
        self.assertEqual(items[-1].exit_code, 0)
        lines = [i for i in items if isinstance(i, StreamLine)]
        stdout = [i.text for i in lines if i.channel == "stdout"]
        stderr = [i.text for i in lines if i.channel == "stderr"]
        self.assertEqual(stdout, ["first", "second", "12%", "tail"])
        self.assertEqual(stderr, ["oops"])

    async def test_run_relayed_raises_with_captured_output(self):
        seen = []
        with self.assertRaises(ControlPlaneError) as ctx:
            await python_client().run_relayed(
                "-c",
                "import sys; print('loading'); print('bad', file=sys.stderr); sys.exit(2)",
                on_line=seen.append,
            )
        self.assertEqual(ctx.exception.exit_code, 2)
        self.assertEqual(ctx.exception.stdout, "loading")
        self.assertEqual(ctx.exception.stderr, "bad")
        self.assertEqual(sorted(l.text for l in seen), ["bad", "loading"])

    async def test_mirrors_raw_output(self):
        client = ControlPlaneClient(cli_path=sys.executable, mirror_output=True)

        class _Sink:
            def __init__(self):
                self.parts = []

            def write(self, text):
                self.parts.append(text)

            def flush(self):
                pass

        sink = _Sink()
        client._mirror = lambda channel: sink
        await client.run_relayed("-c", "print('50%', end='\\r')")
        self.assertEqual("".join(sink.parts), "50%\r")


if __name__ == "__main__":
    unittest.main()
