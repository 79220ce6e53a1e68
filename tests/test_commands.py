"""Command routing, the Flask ingress and the dispatcher."""

from __future__ import annotations

import sys
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(ROOT / "tests"))

from fakes import FakeResponse, FakeSession, FakeTransport, fal_submit, fixed_oracle, funded_ledger, status
from inferbot.app import BUSY_MESSAGE, Dispatcher, create_app
from inferbot.billing import BillingCoordinator
from inferbot.catalog import build_registry
from inferbot.commands import HELP_TEXT, CommandRouter, split_command
from inferbot.courier import ArtifactCourier
from inferbot.pipeline import JobPipeline
from inferbot.queue_client import InferenceQueueClient
from inferbot.schemas import ChatKind, IncomingMessage, JobState, Recipient, Task, TipReceived
from inferbot.webhook import AIWebhook


def pm(text: str, user: str = "alice") -> IncomingMessage:
    return IncomingMessage(kind=ChatKind.PM, sender_id=user, sender_nick=user, text=text)


def gc(text: str, user: str = "alice", group: str = "artists") -> IncomingMessage:
    return IncomingMessage(kind=ChatKind.GC, sender_id=user, sender_nick=user, text=text, group_id=group)


class RouterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.session = FakeSession()
        self.transport = FakeTransport()
        self.ledger = funded_ledger(alice=1_000_000)
        self.oracle = fixed_oracle("25")
        self.billing = BillingCoordinator(self.ledger, self.oracle)
        self.registry = build_registry()
        queue = InferenceQueueClient("key", session=self.session, poll_interval=0.01, max_attempts=2, max_backoff=0.001)
        courier = ArtifactCourier(self.transport, session=self.session)
        self.pipeline = JobPipeline(self.registry, self.billing, queue, courier, self.transport)
        self.router = CommandRouter(self.registry, self.pipeline, self.billing, self.oracle, self.transport)

    def last_text(self) -> str:
        return self.transport.texts[-1]


class CommandRouterTests(RouterTestCase):
    def test_split_command(self) -> None:
        self.assertEqual(split_command("!Text2Image a cat"), ("text2image", "a cat"))
        self.assertEqual(split_command("!balance"), ("balance", ""))
        self.assertIsNone(split_command("hello"))
        self.assertIsNone(split_command("!"))

    def test_plain_chat_is_ignored(self) -> None:
        self.assertIsNone(self.router.handle(pm("hi there")))
        self.assertEqual(self.transport.log, [])

    def test_help_variants(self) -> None:
        self.router.handle(pm("!help"))
        self.assertEqual(self.last_text(), HELP_TEXT)
        self.router.handle(pm("!help i2v"))
        self.assertIn("Model: veo2", self.last_text())
        self.router.handle(pm("!help text2image flux/schnell"))
        self.assertIn("Model: flux/schnell", self.last_text())

    def test_balance_shows_units_atoms_and_usd(self) -> None:
        self.router.handle(pm("!balance"))
        self.assertEqual(self.last_text(), "Your current balance is 0.01000000 DCR (1000000 atoms), about $0.25")

    def test_rate(self) -> None:
        self.router.handle(pm("!rate"))
        self.assertEqual(self.last_text(), "Current DCR Exchange Rates:\nUSD: $25.00\nBTC: 0.00030000")

    def test_listmodels_marks_current_and_models_alias(self) -> None:
        self.router.handle(pm("!listmodels text2image"))
        listing = self.last_text()
        self.assertIn("• fast-sdxl (current) - $0.02", listing)
        self.assertIn("• flux-pro/v1.1-ultra - $0.12", listing)
        self.router.handle(pm("!models t2i"))
        self.assertEqual(self.last_text(), listing)

    def test_setmodel_is_per_user(self) -> None:
        self.router.handle(gc("!setmodel text2image flux/schnell"))
        self.assertEqual(self.transport.log[-1][1], Recipient(ChatKind.GC, "artists"))
        self.assertEqual(self.registry.current(Task.TEXT2IMAGE, "alice").name, "flux/schnell")
        self.assertEqual(self.transport.texts[-1], "Model for text2image set to flux/schnell.")
        self.router.handle(pm("!listmodels text2image", user="bob"))
        self.assertIn("• fast-sdxl (current)", self.last_text())

    def test_unknown_command_and_task(self) -> None:
        self.router.handle(pm("!dance"))
        self.assertIn("Unknown command: !dance", self.last_text())
        self.router.handle(pm("!listmodels painting"))
        self.assertIn("Unknown task 'painting'", self.last_text())
        self.router.handle(pm("!setmodel text2image nope"))
        self.assertIn("Model 'nope' not found", self.last_text())

    def test_ai_disabled(self) -> None:
        self.router.handle(pm("!ai hello"))
        self.assertEqual(self.last_text(), "Webhook functionality is not enabled. Try again later.")

    def test_ai_forwards_to_webhook_session(self) -> None:
        session = FakeSession()
        session.add("POST", "https://agent.example/hook", FakeResponse(200, [{"session_id": "alice"}, {"output": "Hi!"}]))
        self.router.webhook = AIWebhook("https://agent.example/hook", "k", session=session)
        self.router.handle(gc("!ai hello bot"))
        self.assertEqual(self.transport.log[-1][1], Recipient(ChatKind.PM, "alice"))
        self.assertEqual(self.last_text(), "Hi!")
        call = session.calls_to("POST", "https://agent.example/hook")[0]
        self.assertEqual(call["json"], {"message": "hello bot", "user": "alice"})
        self.assertEqual(call["headers"], {"X-BRAIBOT-API-KEY": "k"})

    def test_group_generation_bills_sender_and_replies_to_group(self) -> None:
        job = self.router.handle(gc("!text2image cat", user="poorbob"))
        self.assertEqual(job.user_id, "poorbob")
        self.assertEqual(job.state, JobState.NEW)
        self.assertEqual(self.transport.log[-1][1], Recipient(ChatKind.GC, "artists"))
        self.assertIn("Insufficient balance", self.last_text())

    def test_tip_credits_balance_and_thanks_sender(self) -> None:
        balance = self.router.handle_tip(TipReceived("bob", 50_000_000, nick="bobby", sequence_id=7))
        self.assertEqual(balance, 50_000_000)
        self.assertEqual(self.ledger.get("bob"), 50_000_000)
        self.assertEqual(self.transport.log[-1], ("text", Recipient(ChatKind.PM, "bobby"), "Thank you for the tip of 0.50000000 DCR!"))
        self.assertEqual(self.ledger.events("bob")[0]["reason"], "tip 7")

    def test_tip_lifts_insufficient_balance(self) -> None:
        self.router.handle(pm("!text2image cat", user="carol"))
        self.assertIn("Insufficient balance", self.last_text())
        self.router.handle_tip(TipReceived("carol", 80_000))
        self.router.handle(pm("!balance", user="carol"))
        self.assertIn("(80000 atoms)", self.last_text())

    def test_cancel_without_dispatcher(self) -> None:
        self.router.handle(pm("!cancel"))
        self.assertEqual(self.last_text(), "You have no running jobs.")


class DispatcherTests(RouterTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.dispatcher = Dispatcher(self.router, self.transport, max_jobs=2)

    def tearDown(self) -> None:
        self.dispatcher.shutdown(wait=True)

    def script_endless_queue(self) -> dict:
        urls = fal_submit(self.session, "fast-sdxl")
        self.session.add("GET", urls["status_url"], status("IN_QUEUE", position=5))
        return urls

    def wait_for(self, predicate, timeout: float = 5.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                self.fail("condition not reached")
            time.sleep(0.01)

    def test_info_commands_run_inline(self) -> None:
        self.assertIsNone(self.dispatcher.dispatch(pm("!balance")))
        self.assertIn("1000000 atoms", self.last_text())

    def test_cancel_command_stops_running_job_and_refunds(self) -> None:
        self.script_endless_queue()
        future = self.dispatcher.dispatch(pm("!text2image cat"))
        self.wait_for(lambda: any(job.get("state") == "queued" for job in self.dispatcher.active_jobs()))
        self.dispatcher.dispatch(pm("!cancel"))
        job = future.result(timeout=5)
        self.assertEqual(job.state, JobState.REFUNDED)
        self.assertEqual(self.ledger.get("alice"), 1_000_000)
        self.assertIn("Canceling 1 running job(s).", self.transport.texts)

    def test_shutdown_refunds_in_flight_jobs(self) -> None:
        self.script_endless_queue()
        future = self.dispatcher.dispatch(pm("!text2image cat"))
        self.wait_for(lambda: self.ledger.get("alice") == 920_000)
        self.dispatcher.shutdown(wait=True)
        self.assertEqual(future.result(timeout=5).state, JobState.REFUNDED)
        self.assertEqual(self.ledger.get("alice"), 1_000_000)

    def test_global_cap_rejects_when_busy(self) -> None:
        self.script_endless_queue()
        first = self.dispatcher.dispatch(pm("!text2image cat"))
        second = self.dispatcher.dispatch(pm("!text2image dog"))
        third = self.dispatcher.dispatch(pm("!text2image bird"))
        self.assertIsNotNone(first)
        self.assertIsNotNone(second)
        self.assertIsNone(third)
        self.assertIn(BUSY_MESSAGE, self.transport.texts)
        self.dispatcher.cancel_user("alice")
        first.result(timeout=5)
        second.result(timeout=5)


class IngressTests(RouterTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.dispatcher = MagicMock(spec=Dispatcher)
        self.dispatcher.dispatch.return_value = None
        self.dispatcher.active_jobs.return_value = [{"id": "job-1", "state": "queued"}]
        self.client = create_app(self.dispatcher).test_client()

    def test_post_message_dispatches(self) -> None:
        resp = self.client.post("/messages", json={"kind": "gc", "sender_id": "u1", "sender_nick": "ann", "group_id": "g", "text": "!rate"})
        self.assertEqual(resp.status_code, 202)
        self.assertEqual(resp.get_json(), {"accepted": True, "job": False})
        msg = self.dispatcher.dispatch.call_args[0][0]
        self.assertEqual(msg.reply_to, Recipient(ChatKind.GC, "g"))

    def test_invalid_messages_rejected(self) -> None:
        self.assertEqual(self.client.post("/messages", data="nope", content_type="text/plain").status_code, 400)
        resp = self.client.post("/messages", json={"kind": "gc", "sender_id": "u1", "text": "!rate"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "invalid_message")
        self.dispatcher.dispatch.assert_not_called()

    def test_health_and_jobs(self) -> None:
        self.assertEqual(self.client.get("/healthz").get_json(), {"status": "ok", "active_jobs": 1})
        self.assertEqual(self.client.get("/jobs").get_json(), {"jobs": [{"id": "job-1", "state": "queued"}]})
        self.assertNotIn("Access-Control-Allow-Origin", self.client.get("/healthz", headers={"Origin": "https://ops.example"}).headers)

    def test_tip_route_credits_through_dispatcher(self) -> None:
        self.dispatcher.credit_tip.return_value = 1_500
        resp = self.client.post("/tips", json={"user_id": "u1", "nick": "ann", "amount_matoms": 1_500_000, "sequence_id": 3})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json(), {"credited": 1_500, "balance": 1_500})
        self.assertEqual(self.dispatcher.credit_tip.call_args[0][0], TipReceived("u1", 1_500, nick="ann", sequence_id=3))

    def test_invalid_tips_rejected(self) -> None:
        for payload in ({"user_id": "u1"}, {"user_id": "u1", "atoms": 0}, {"atoms": 5}, {"user_id": "u1", "atoms": "lots"}):
            with self.subTest(payload=payload):
                self.assertEqual(self.client.post("/tips", json=payload).status_code, 400)
        self.dispatcher.credit_tip.assert_not_called()

    def test_cors_for_configured_origins(self) -> None:
        client = create_app(self.dispatcher, "https://ops.example").test_client()
        resp = client.get("/jobs", headers={"Origin": "https://ops.example"})
        self.assertEqual(resp.headers.get("Access-Control-Allow-Origin"), "https://ops.example")


if __name__ == "__main__":
    unittest.main()
