import argparse, logging
from buildpipe.bus import create_topics
from buildpipe.config import load_config, topics

def main():
    p = argparse.ArgumentParser(description="Create the pipeline topics")
    p.add_argument("--partitions", type=int, default=5)
    p.add_argument("--replication", type=int, default=1)
    a = p.parse_args()

    cfg = load_config()
    logging.basicConfig(level=cfg["LOG_LEVEL"], format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    names = list(topics(cfg).values())
    created = create_topics(cfg["BROKERS"], names, partitions=a.partitions, replication=a.replication)
    print(f"Created {len(created)} of {len(names)} topics @ {cfg['BROKERS']}")

if __name__ == "__main__":
    main()
