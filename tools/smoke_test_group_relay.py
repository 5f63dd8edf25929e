#!/usr/bin/env python3
"""Smoke test: group message relay + catch-up after reconnect.

What it checks
- Can register/login two users over the JSON API.
- A creates a public group, B joins it.
- Online relay works (A sends, B's session receives ReceiveMessage).
- Catch-up works (B disconnects, A sends, B reconnects and finds the message).

Usage:
  python tools/smoke_test_group_relay.py --base http://127.0.0.1:5000

Tip:
  Run the server first in another terminal.
"""

from __future__ import annotations

import argparse
import os
import random
import string
import sys
import threading
import time
from pathlib import Path

import requests

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from client.sync_session import ClientSyncSession  # noqa: E402
from constants import EVENT_RECEIVE_MESSAGE  # noqa: E402


def _rand_suffix(n: int = 6) -> str:
    return "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(n))


def register_user(base: str, username: str, password: str) -> None:
    r = requests.post(f"{base}/api/auth/register", json={"username": username, "password": password}, timeout=10)
    # 409 -> already exists (fine for smoke tests)
    if r.status_code not in (201, 409):
        raise RuntimeError(f"register failed: {r.status_code} {r.text[:200]}")


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--base", default=os.environ.get("CRTALK_BASE", "http://127.0.0.1:5000"))
    ap.add_argument("--user-a", default=f"smokea_{_rand_suffix()}")
    ap.add_argument("--user-b", default=f"smokeb_{_rand_suffix()}")
    ap.add_argument("--password", default="TestPassw0rd!123")
    args = ap.parse_args()

    base = args.base.rstrip("/")

    # 1) Register + login both users
    register_user(base, args.user_a, args.password)
    register_user(base, args.user_b, args.password)

    received = threading.Event()

    def _on_event(event, payload):
        if event == EVENT_RECEIVE_MESSAGE:
            received.set()

    A = ClientSyncSession(base)
    B = ClientSyncSession(base, on_event=_on_event)
    A.login(args.user_a, args.password)
    B.login(args.user_b, args.password)

    # 2) Group setup over REST
    r = requests.post(
        f"{base}/api/groups",
        json={"name": f"smoke-{_rand_suffix()}", "isPublic": True},
        headers={"Authorization": f"Bearer {A.access_token}"},
        timeout=10,
    )
    r.raise_for_status()
    group_id = r.json()["id"]
    r = requests.post(
        f"{base}/api/groups/{group_id}/join",
        headers={"Authorization": f"Bearer {B.access_token}"},
        timeout=10,
    )
    r.raise_for_status()

    try:
        A.start()
        B.start()
        A.join_group(group_id)
        B.join_group(group_id)

        # 3) Online relay
        received.clear()
        sent = A.send_message(group_id, "online hello")
        if not received.wait(10) or sent["id"] not in B.cache(group_id):
            print("❌ Online group message not received")
            return 3
        print("✅ Online group relay OK")

        # 4) Offline catch-up (disconnect B, send, reconnect)
        B.stop()
        missed = A.send_message(group_id, "sent while you were away")

        B2 = ClientSyncSession(base, access_token=B.access_token, refresh_token=B.refresh_token)
        try:
            B2.start()
            B2.join_group(group_id)
            deadline = time.time() + 10
            while missed["id"] not in B2.cache(group_id) and time.time() < deadline:
                time.sleep(0.2)
            if missed["id"] not in B2.cache(group_id):
                print("❌ Missed message not recovered after reconnect")
                return 5
            print("✅ Reconnect catch-up OK")
        finally:
            B2.stop()

        print("\n🎉 Smoke test PASSED")
        return 0

    finally:
        A.stop()
        B.stop()


if __name__ == "__main__":
    raise SystemExit(main())
