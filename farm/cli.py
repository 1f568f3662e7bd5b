"""Command line entry point.

    python -m farm run      # loop until interrupted
    python -m farm tick     # one pass, print the result as JSON
    python -m farm serve    # loop in the background behind the REST API
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from typing import Optional, Sequence, Tuple

from farm.config import SchedulerConfig, load_config
from farm.errors import ConfigurationError
from farm.host.base import HostEnvironment
from farm.runner import SchedulerLoop
from farm.scheduler import BatchScheduler
from farm.stages import default_controller

logger = logging.getLogger(__name__)


def build_host(cfg: SchedulerConfig) -> HostEnvironment:
    if cfg.backend == "simulated":
        from farm.host.simulated import SimulatedHost
        return SimulatedHost.from_yaml(cfg.world_path)
    if cfg.backend == "kubernetes":
        from farm.host.kubernetes import KubernetesHost
        return KubernetesHost(namespace=cfg.namespace, payload_dir=cfg.payload_dir)
    raise ConfigurationError(f"unknown backend: {cfg.backend}")


def build_loop(cfg: SchedulerConfig, host: Optional[HostEnvironment] = None) -> Tuple[BatchScheduler, SchedulerLoop]:
    host = host or build_host(cfg)
    scheduler = BatchScheduler(host, config=cfg)
    return scheduler, SchedulerLoop(default_controller(host, cfg, scheduler), host, cfg.tick_interval_ms)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="farm", description="Capacity-aware operation scheduler")
    parser.add_argument("--config", default=None, help="YAML config file (default: $FARM_CONFIG or farm.yaml)")
    parser.add_argument("--log-level", default=os.getenv("FARM_LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="command", required=True)
    run_p = sub.add_parser("run", help="run the scheduling loop in the foreground")
    run_p.add_argument("--ticks", type=int, default=None, help="stop after this many ticks")
    sub.add_parser("tick", help="run a single tick and print the result")
    serve_p = sub.add_parser("serve", help="serve the REST API with the loop in the background")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8080)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = load_config(args.config)
    scheduler, loop = build_loop(cfg)

    if args.command == "tick":
        print(json.dumps(loop.step().to_dict(), indent=2))
        return

    if args.command == "run":
        try:
            loop.run_forever(max_ticks=args.ticks)
        except KeyboardInterrupt:
            logger.info("Interrupted")
        if loop.fault is not None:
            raise SystemExit(1)
        return

    from farm.api import create_app
    app = create_app(scheduler, loop=loop)
    loop.start()
    try:
        app.run(host=args.host, port=args.port)
    finally:
        loop.stop()


if __name__ == "__main__":
    main()
