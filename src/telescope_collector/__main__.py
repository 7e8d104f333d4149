"""Run the collector with ``python -m telescope_collector``."""

from telescope_collector.main import run

if __name__ == "__main__":
    run()
