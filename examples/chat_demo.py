"""Minimal demonstration of the streaming chat engine."""

import asyncio
import sys

from chat_core.api.service import get_default_engine, shutdown


async def main(question: str) -> None:
    engine = await get_default_engine()
    cid = engine.active_conversation_id
    shown = {"len": 0}

    def on_snapshot(event):
        print(event.content[shown["len"]:], end="", flush=True)
        shown["len"] = len(event.content)

    engine.subscribe_snapshots(on_snapshot)
    handle = await engine.send_turn(cid, question)
    await handle.wait()
    print()
    if engine.error_for(cid):
        print("Error:", engine.error_for(cid))
    await shutdown()


if __name__ == "__main__":
    asyncio.run(main(" ".join(sys.argv[1:]) or "Explain asyncio in two sentences."))
