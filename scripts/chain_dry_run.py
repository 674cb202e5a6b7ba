"""Print the model chain for the next few requests and optionally run one.

Usage:
  python scripts/chain_dry_run.py --config-dir config --rounds 3
  python scripts/chain_dry_run.py --config-dir config --send "Say hi as JSON"
"""

import argparse
import asyncio
import json
import logging
import pathlib
import sys

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from src.sched.errors import ChainExhausted  # noqa: E402
from src.sched.router import ChainPlanner, build_chain, load_config  # noqa: E402
from src.sched.scheduler import Scheduler  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--config-dir", default=str(ROOT_DIR / "config"))
    parser.add_argument("--dummy", action="store_true", help="use providers.dummy.toml")
    parser.add_argument("--rounds", type=int, default=2, help="number of rotations to print")
    parser.add_argument("--send", metavar="PROMPT", help="run one completion with this user prompt")
    parser.add_argument("--system", default="", help="system prompt used with --send")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")
    loaded = load_config(args.config_dir, use_dummy=args.dummy)
    for offset in range(max(0, args.rounds)):
        chain = build_chain(loaded.chain, loaded.providers, offset)
        print(f"offset={offset}: " + (" -> ".join(str(route) for route in chain) or "<empty>"))
    if not args.send:
        return 0
    scheduler = Scheduler(loaded, planner=ChainPlanner())
    try:
        result = asyncio.run(scheduler.complete(args.system, args.send))
    except ChainExhausted as exc:
        print(f"chain exhausted: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
