from __future__ import annotations

import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from analytics import main
from analytics.channels import StreamBridge


class TestApi(unittest.TestCase):
    def setUp(self) -> None:
        self.tempdir = tempfile.TemporaryDirectory()
        patches = [
            mock.patch.object(main, "DB_PATH", Path(self.tempdir.name) / "api.db"),
            mock.patch.object(main, "FLUSH_DELAY_SECONDS", None),
            mock.patch.object(main, "AUTO_INITIALIZE", True),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = TestClient(main.app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self.tempdir.cleanup()

    def _play(self, level_id: str, successful: bool, elapsed_ms: int, reward: float) -> None:
        self.assertTrue(self.client.post("/api/attempts/start", json={"level_id": level_id}).json()["ok"])
        response = self.client.post(
            "/api/attempts/end",
            json={"level_id": level_id, "successful": successful, "elapsed_ms": elapsed_ms, "reward": reward},
        )
        self.assertTrue(response.json()["ok"])

    def test_health_reports_session_and_channels(self) -> None:
        body = self.client.get("/api/health").json()
        self.assertTrue(body["ok"])
        self.assertTrue(body["initialized"])
        self.assertTrue(body["session_id"].startswith("session_"))
        self.assertEqual(body["pending_reports"], 0)
        self.assertEqual(
            [channel["name"] for channel in body["channels"]],
            ["host_tracker", "message_bridge", "parent_frame"],
        )

    def test_attempt_flow_and_report(self) -> None:
        self.client.post("/api/session/initialize", json={"game_id": "g", "session_name": "s"})
        self._play("level_3_push", False, 25000, 0)
        self._play("level_3_push", True, 20000, 120)
        self.client.post("/api/metrics", json={"key": "fps", "value": 60})

        report = self.client.get("/api/report").json()["report"]
        self.assertEqual(report["gameId"], "g")
        self.assertEqual(report["name"], "s")
        stats = report["perLevelAnalytics"]["level_3_push"]
        self.assertEqual(stats["attempts"], 2)
        self.assertEqual(stats["bestTimeMs"], 20000)
        self.assertEqual(stats["averageTimeMs"], 22500)
        self.assertEqual(report["rawData"], [{"key": "fps", "value": "60"}])

    def test_unknown_level_is_rejected_without_error(self) -> None:
        response = self.client.post(
            "/api/attempts/end",
            json={"level_id": "level_9_sink", "successful": True, "elapsed_ms": 10, "reward": 5},
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["ok"])

    def test_submit_without_host_bridges_queues_then_flushes(self) -> None:
        self._play("level_2_click", True, 3000, 100)

        submitted = self.client.post("/api/report/submit").json()
        self.assertEqual(submitted["pending_reports"], 1)
        pending = self.client.get("/api/pending").json()
        self.assertEqual(pending["count"], 1)
        self.assertEqual(pending["reports"][0]["sessionId"], submitted["report"]["sessionId"])

        received: list[dict] = []
        self.client.app.state.bridges.track_game_session = received.append
        self.assertEqual(self.client.post("/api/host/online").json()["delivered"], 1)
        self.assertEqual(len(received), 1)
        self.assertEqual(self.client.get("/api/pending").json()["count"], 0)

        deliveries = self.client.get("/api/deliveries").json()["deliveries"]
        self.assertEqual([d["origin"] for d in deliveries], ["flush", "submit"])
        self.assertEqual(deliveries[0]["channels"], ["host_tracker"])

    def _restart(self) -> None:
        self.client.__exit__(None, None, None)
        self.client = TestClient(main.app)
        self.client.__enter__()

    def test_queued_report_survives_restart_until_first_subscriber(self) -> None:
        self._play("level_2_click", True, 3000, 100)
        session_id = self.client.post("/api/report/submit").json()["report"]["sessionId"]

        self._restart()
        self.assertEqual(self.client.get("/api/pending").json()["count"], 1)
        self.assertEqual(self.client.get("/api/deliveries").json()["deliveries"][0]["origin"], "submit")

        state = self.client.app.state
        inbox = main.connect_stream_subscriber(state)
        try:
            self.assertEqual(json.loads(inbox.get_nowait())["sessionId"], session_id)
            self.assertEqual(self.client.get("/api/pending").json()["count"], 0)

            # Later subscribers do not trigger another flush.
            second = main.connect_stream_subscriber(state)
            state.stream.unsubscribe(second)
        finally:
            state.stream.unsubscribe(inbox)
        origins = [d["origin"] for d in self.client.get("/api/deliveries").json()["deliveries"]]
        self.assertEqual(origins, ["flush", "submit"])

    def test_handshake_message_sets_parent_origin(self) -> None:
        body = self.client.post(
            "/api/host/message", json={"type": "ANALYTICS_CONFIG", "parentOrigin": "https://host.example"}
        ).json()
        self.assertTrue(body["recognized"])
        self.assertEqual(body["parent_origin"], "https://host.example")

        body = self.client.post("/api/host/message", json={"type": "PING"}).json()
        self.assertFalse(body["recognized"])
        self.assertEqual(body["parent_origin"], "https://host.example")

    def test_end_session_abandons_open_attempt_and_submits(self) -> None:
        self.client.post("/api/attempts/start", json={"level_id": "level_12_snare"})
        body = self.client.post("/api/session/end", json={"elapsed_ms": 9000}).json()

        self.assertTrue(body["abandoned"])
        self.assertEqual(body["level_id"], "level_12_snare")
        level = body["report"]["diagnostics"]["levels"][0]
        self.assertFalse(level["successful"])
        self.assertEqual(level["timeTaken"], 9000)
        self.assertEqual(self.client.get("/api/pending").json()["count"], 1)

        again = self.client.post("/api/session/end", json={"elapsed_ms": 100}).json()
        self.assertFalse(again["abandoned"])
        self.assertIsNone(again["report"])

    def test_reset_clears_data_but_keeps_session(self) -> None:
        session_id = self.client.get("/api/health").json()["session_id"]
        self._play("level_2_click", True, 3000, 100)
        body = self.client.post("/api/session/reset").json()
        self.assertEqual(body["session_id"], session_id)
        report = self.client.get("/api/report").json()["report"]
        self.assertEqual(report["perLevelAnalytics"], {})
        self.assertEqual(report["rewardEarnedTotal"], 0)


class DisconnectingRequest:
    def __init__(self, polls_before_disconnect: int) -> None:
        self.polls_left = polls_before_disconnect

    async def is_disconnected(self) -> bool:
        self.polls_left -= 1
        return self.polls_left < 0


class TestStreamEvents(unittest.TestCase):
    def _collect(self, request: DisconnectingRequest, bridge: StreamBridge) -> list[str]:
        inbox = bridge.subscribe()

        async def run() -> list[str]:
            return [event async for event in main.stream_events(request, bridge, inbox)]

        bridge.post_message('{"sessionId": "s"}')
        return asyncio.run(run())

    def test_disconnected_client_stops_counting_as_receiver(self) -> None:
        bridge = StreamBridge(buffer_size=4)
        events = self._collect(DisconnectingRequest(polls_before_disconnect=1), bridge)

        self.assertEqual(events, ['data: {"sessionId": "s"}\n\n'])
        self.assertEqual(bridge.subscriber_count, 0)
        with self.assertRaises(ConnectionError):
            bridge.post_message("{}")

    def test_already_disconnected_client_is_dropped_at_once(self) -> None:
        bridge = StreamBridge(buffer_size=4)
        self.assertEqual(self._collect(DisconnectingRequest(polls_before_disconnect=0), bridge), [])
        self.assertEqual(bridge.subscriber_count, 0)


if __name__ == "__main__":
    unittest.main()
