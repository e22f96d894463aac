"""Run the relay: ``python -m chess_coach --config config.yaml``."""

import argparse
import os

import uvicorn


def main():
    p = argparse.ArgumentParser(description="Chess coach relay")
    p.add_argument("--config", help="Path to config.yaml (default: $CHESS_COACH_CONFIG or ./config.yaml)")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=int(os.environ.get("CHESS_COACH_PORT", "8000")))
    args = p.parse_args()

    if args.config:
        # main.py reads the config at import time
        os.environ["CHESS_COACH_CONFIG"] = args.config

    from chess_coach.main import app

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
