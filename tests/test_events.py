import asyncio
import json
import unittest

from foundry_gateway.events import EventChannel, encode_event


def decode(frames):
    return [json.loads(f[len("data: "):].strip()) for f in frames]


class EventChannelTests(unittest.IsolatedAsyncioTestCase):
    async def test_frames_in_order_until_close(self):
        channel = EventChannel()
        channel.log("one")
        channel.send({"unloaded": "phi"})
        channel.close()
        frames = [f async for f in channel.frames()]
        self.assertEqual(decode(frames), [{"log": "one"}, {"unloaded": "phi"}])
        self.assertTrue(all(f.startswith("data: ") and f.endswith("\n\n") for f in frames))

    async def test_sends_after_close_are_dropped(self):
        channel = EventChannel()
        channel.close()
        channel.send({"log": "late"})
        channel.close()
        self.assertEqual([f async for f in channel.frames()], [])
        self.assertEqual(channel.history, [])

    async def test_run_closes_after_producer(self):
        channel = EventChannel()

        async def producer():
            channel.log("working")
            await asyncio.sleep(0)
            channel.send({"done": True})

        channel.run(producer())
        frames = [f async for f in channel.frames()]
        self.assertEqual(decode(frames), [{"log": "working"}, {"done": True}])
        self.assertTrue(channel.closed)

    async def test_run_turns_failure_into_terminal_error(self):
        channel = EventChannel()

        async def producer():
            channel.log("about to fail")
            raise RuntimeError("load code 1")

        with self.assertLogs("foundry_gateway.events", level="ERROR"):
            channel.run(producer())
            frames = [f async for f in channel.frames()]
        self.assertEqual(decode(frames)[-1], {"error": "load code 1"})

    async def test_abandoned_stream_stops_collecting(self):
        channel = EventChannel()
        channel.log("first")
        frames = channel.frames()
        await frames.__anext__()
        await frames.aclose()
        channel.log("after disconnect")
        self.assertEqual(channel.history, [{"log": "first"}])

    def test_encode_event(self):
        self.assertEqual(encode_event({"done": True}), 'data: {"done": true}\n\n')


if __name__ == "__main__":
    unittest.main()
