"""Start the FlowChain HTTP API under uvicorn.

    python run.py --reload
    python run.py --host 0.0.0.0 --workers 4
    python run.py --sweeper          # also alert on halted instances
"""
import argparse
import os

import uvicorn


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="FlowChain approval engine API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true", help="restart on code changes")
    parser.add_argument("--workers", type=int, default=1, help="ignored with --reload")
    parser.add_argument(
        "--sweeper",
        action="store_true",
        help="run the halted instance sweeper in this process (sets ENABLE_HALT_SWEEPER)"
    )
    parser.add_argument("--log-level", default=None, help="overrides LOG_LEVEL")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    # Settings are read at import time, so the environment is set before uvicorn imports the app
    if args.sweeper:
        os.environ["ENABLE_HALT_SWEEPER"] = "true"
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level

    workers = 1 if args.reload else max(args.workers, 1)
    if args.sweeper and workers > 1:
        print("warning: every worker runs its own sweeper, halted instances will be alerted once per worker")

    print(f"FlowChain API on http://{args.host}:{args.port} (workers={workers}, reload={args.reload})")
    uvicorn.run(
        "flowchain.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=workers,
    )


if __name__ == "__main__":
    main()
