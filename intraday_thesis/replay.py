from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from typing import Optional, TextIO

from intraday_thesis.config import EngineConfig
from intraday_thesis.datafeed.feed import CsvBarFeed
from intraday_thesis.engine import Engine
from intraday_thesis.events import DomainEvent, to_dict
from intraday_thesis.llm.gateway import DecisionGateway
from intraday_thesis.llm.gemini import ScriptedClient
from intraday_thesis.logging_setup import configure_logging

log = logging.getLogger(__name__)

LLM_MODES = ["off", "gemini", "scripted-long", "scripted-short", "scripted-pass"]


def scripted_reply(selection: str) -> str:
    # One reply that satisfies both the selection and the direction-opinion schema.
    direction = "NEUTRAL" if selection == "PASS" else selection
    return json.dumps({
        "selected": selection,
        "direction": direction,
        "confidence": 85 if selection != "PASS" else 0,
        "reason": f"scripted {selection.lower()}",
    })


def build_gateway(mode: str, cfg: EngineConfig) -> DecisionGateway:
    timeout_s = cfg.orchestrator.gateway_timeout_s
    if mode.startswith("scripted-"):
        selection = mode.split("-", 1)[1].upper()
        return DecisionGateway(ScriptedClient(replies=[scripted_reply(selection)]), timeout_s=timeout_s)
    if mode == "gemini":
        llm = dataclasses.replace(cfg.llm, provider="gemini")
        return DecisionGateway.from_config(llm, timeout_s=timeout_s)
    return DecisionGateway(None, timeout_s=timeout_s)


def json_line_sink(out: TextIO):
    def _sink(event: DomainEvent) -> None:
        out.write(json.dumps(to_dict(event), sort_keys=True) + "\n")
        out.flush()
    return _sink


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="intraday_thesis.replay",
        description="Replay a CSV of 1-minute bars through the thesis engine and print events as JSON lines",
    )
    p.add_argument("csv_path", help="CSV with columns ts,open,high,low,close,volume")
    p.add_argument("--symbol", default=None, help="Override ENGINE_SYMBOL")
    p.add_argument("--instance-id", default=None, help="Override ENGINE_INSTANCE_ID")
    p.add_argument("--db-path", default=None, help="Override ENGINE_DB_PATH")
    p.add_argument("--llm", choices=LLM_MODES, default="off", help="Decision gateway backend")
    p.add_argument("--advisory", action="store_true", help="Enable the LLM direction advisory")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--log-file", default=None)
    return p


def main(argv: list[str] | None = None, *, out: Optional[TextIO] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, log_file=args.log_file, console=True)

    cfg = EngineConfig.from_env()
    cfg = dataclasses.replace(
        cfg,
        symbol=(args.symbol or cfg.symbol).strip().upper(),
        instance_id=args.instance_id or cfg.instance_id,
        db_path=args.db_path or cfg.db_path,
        advisory=dataclasses.replace(cfg.advisory, enabled=cfg.advisory.enabled or args.advisory),
    )

    engine = Engine.from_config(cfg, gateway=build_gateway(args.llm, cfg))
    engine.publisher.add_sink(json_line_sink(out or sys.stdout))
    feed = CsvBarFeed(args.csv_path, symbol=cfg.symbol)
    try:
        processed = engine.run(feed)
    finally:
        feed.close()
        engine.close()
    log.info("Replayed %d bars from %s", processed, args.csv_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
