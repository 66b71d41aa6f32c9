"""Full E2E smoke run: create a session, submit a turn, poll until done, print the answer.

Needs a running server (uvicorn consensus_engine.main:app) with real API keys.
"""
import asyncio
import json
import sys

import httpx

API = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"


async def main():
    async with httpx.AsyncClient(timeout=30) as client:
        r = await client.post(f"{API}/api/sessions")
        session_id = r.json()["id"]
        print(f"Created session: {session_id}")

        body = {"prompt": "Compare event sourcing with CRUD for an order service."}
        r = await client.post(f"{API}/api/sessions/{session_id}/turns", json=body)
        turn_id = r.json()["turn_id"]
        print(f"Submitted turn: {turn_id}")

        # Poll until done
        turn: dict = {}
        for i in range(60):  # up to 5 minutes
            await asyncio.sleep(5)
            r = await client.get(f"{API}/api/sessions/{session_id}")
            turns = {t["id"]: t for t in r.json()["turns"]}
            turn = turns.get(turn_id, {})
            workers = [
                f"{w['expert']['id']}={w['status']}" for w in turn.get("worker_results", [])
            ]
            print(f"  [{i*5}s] stage={turn.get('step')} {', '.join(workers)}")
            if turn.get("step") in ("complete", "error"):
                break

        print("\n=== Worker Results ===")
        for w in turn.get("worker_results", []):
            dur = w.get("execution_time_ms", "?")
            print(f"  {w['expert']['id']:20s} {w['status']:8s} ({dur}ms) {w['content'][:80]}")

        # --- Assertions ---
        assert turn.get("step") == "complete", f"Turn ended in {turn.get('step')}: {turn.get('error')}"
        assert turn["consensus_content"], "Empty consensus"
        assert turn["consensus_content"].lstrip("* ").lower().startswith("confidence"), \
            "Consensus does not open with a confidence marker"
        succeeded = [w for w in turn["worker_results"] if w["status"] == "success"]
        assert succeeded, "No expert succeeded"
        print(f"\n✓ Turn complete, {len(succeeded)}/{len(turn['worker_results'])} experts succeeded.")

        print("\n=== Consensus ===")
        print(turn["consensus_content"][:4000])
        print("\n=== Critic ===")
        print(turn.get("critic_content"))
        print(json.dumps({"total_tokens": turn.get("total_tokens")}))


if __name__ == "__main__":
    asyncio.run(main())
