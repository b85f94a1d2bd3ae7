import argparse, asyncio, json, time
from aiokafka import AIOKafkaConsumer
from buildpipe.config import load_config, topics

async def peek(names, brokers, build_id=None, count=None):
    c = AIOKafkaConsumer(*names,
        bootstrap_servers=brokers,
        group_id=f"peek-{int(time.time())}",
        auto_offset_reset="latest",
        value_deserializer=lambda b: json.loads(b.decode()))
    await c.start()
    seen = 0
    try:
        print("Waiting for messages on", ", ".join(names), "…")
        async for m in c:
            key = m.key.decode() if m.key else ""
            if build_id and key != build_id:
                continue
            print(f"[{m.topic}] {key}: {json.dumps(m.value)}")
            seen += 1
            if count and seen >= count:
                break
    finally:
        await c.stop()

def main():
    cfg = load_config()
    known = topics(cfg)
    p = argparse.ArgumentParser(description="Tail pipeline topics")
    p.add_argument("topics", nargs="*", default=["status", "logs", "completions"],
                   help=f"topic names or aliases ({', '.join(known)})")
    p.add_argument("--build", default=None, help="only show messages keyed by this build id")
    p.add_argument("-n", "--count", type=int, default=None, help="stop after N messages")
    a = p.parse_args()
    names = [known.get(t, t) for t in a.topics]
    try:
        asyncio.run(peek(names, cfg["BROKERS"], a.build, a.count))
    except KeyboardInterrupt:
        pass

if __name__ == "__main__":
    main()
