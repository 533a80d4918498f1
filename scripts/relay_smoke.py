#!/usr/bin/env python3
"""
Live smoke test for a running relay.

Checks /health, then opens WS /realtime, starts a conversation, streams one
second of silence and waits for the conversation to end.

Usage:
  DEVICE_TOKEN=... python relay_smoke.py --url http://localhost:3000
  python relay_smoke.py --url https://relay.example.com --token <device-token>
"""
import argparse
import asyncio
import base64
import json
import os
import sys

import aiohttp

# 1 second of 24 kHz mono PCM16 silence, sent as 10 chunks
SILENCE_CHUNK = b"\x00\x00" * 2400
CHUNKS = 10


async def check_health(session, base_url):
    url = f"{base_url}/health"
    print(f"\nTesting health endpoint: {url}")
    async with session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as response:
        body = await response.json()
        print(f"Status: {response.status}")
        print(f"Response: {json.dumps(body, indent=2)}")
        return response.status == 200


async def check_conversation(session, base_url, token, timeout):
    ws_url = base_url.replace("http://", "ws://").replace("https://", "wss://") + "/realtime"
    print(f"\nTesting realtime socket: {ws_url}")

    async with session.ws_connect(ws_url, headers={"Authorization": f"Bearer {token}"}) as ws:
        await ws.send_json({"type": "start_conversation", "conversationHistory": []})
        for _ in range(CHUNKS):
            await ws.send_json({
                "type": "audio_chunk",
                "data": base64.b64encode(SILENCE_CHUNK).decode("ascii"),
            })
        await ws.send_json({"type": "end_conversation"})

        seen = []
        while True:
            msg = await asyncio.wait_for(ws.receive(), timeout=timeout)
            if msg.type != aiohttp.WSMsgType.TEXT:
                print(f"Socket closed: {msg.type.name}")
                break
            event = json.loads(msg.data)
            seen.append(event["type"])
            detail = event.get("text") or event.get("message") or ""
            print(f"  <- {event['type']} {detail}")
            if event["type"] in ("conversation_ended", "error"):
                break

    ok = "conversation_started" in seen and seen[-1] == "conversation_ended"
    print("Conversation check: " + ("PASSED" if ok else "FAILED"))
    return ok


async def main():
    parser = argparse.ArgumentParser(description="Relay live smoke test")
    parser.add_argument("--url", default=os.getenv("RELAY_URL", "http://localhost:3000"))
    parser.add_argument("--token", default=os.getenv("DEVICE_TOKEN"))
    parser.add_argument("--timeout", type=float, default=30.0)
    args = parser.parse_args()

    if not args.token:
        print("ERROR: pass --token or set DEVICE_TOKEN")
        return 1

    base_url = args.url.rstrip("/")
    async with aiohttp.ClientSession() as session:
        results = [
            await check_health(session, base_url),
            await check_conversation(session, base_url, args.token, args.timeout),
        ]
    return 0 if all(results) else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
