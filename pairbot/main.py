"""
Entry point wiring all components.

Signals are read line by line from stdin, either as text ("T BUY ENTRY",
optionally followed by a signal id) or as a JSON webhook body
({"signal": "T BUY ENTRY", "signalId": "..."}), which is enough to drive the
paper broker by hand or from a pipe. SL/TP distances come from M5 candles
built from the engine's own ticks once enough of them have closed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import threading
from typing import Optional

from pairbot.config.config import Settings
from pairbot.core.clock import Clock
from pairbot.core.context import EngineContext
from pairbot.execution.broker_gateway import BrokerGateway
from pairbot.execution.paper_broker import PaperBroker
from pairbot.infra.logging_cfg import build_logger
from pairbot.monitoring.metrics import EngineMetrics, start_metrics_server
from pairbot.monitoring.notifier import LogNotifier, NotificationHook, Notifier, WebhookNotifier
from pairbot.orchestrator.engine import PairEngine
from pairbot.signals.signal import InvalidSignal, signal_from_payload
from pairbot.strategy.sizing import CandleIndicators

log = logging.getLogger("pairbot")


def build_broker(cfg: Settings, clock: Clock) -> BrokerGateway:
    if cfg.broker == "paper":
        return PaperBroker(clock, symbol=cfg.symbol, mirror_second_leg=True)
    raise ValueError(f"unsupported broker connector: {cfg.broker!r}")


def build_notifier(cfg: Settings) -> Notifier:
    if cfg.notify_webhook_url:
        return WebhookNotifier(
            cfg.notify_webhook_url,
            webhook_type=cfg.notify_webhook_type,
            chat_id=cfg.telegram_chat_id,
            timeout=cfg.notify_timeout_sec,
        )
    return LogNotifier()


def _stdin_reader(loop: asyncio.AbstractEventLoop, lines: "asyncio.Queue[str]") -> None:
    for line in sys.stdin:
        loop.call_soon_threadsafe(lines.put_nowait, line)
    loop.call_soon_threadsafe(lines.put_nowait, "")


async def read_signals(engine: PairEngine) -> None:
    loop = asyncio.get_running_loop()
    lines: "asyncio.Queue[str]" = asyncio.Queue()
    # daemon thread: a blocked stdin read must not hold up shutdown
    threading.Thread(target=_stdin_reader, args=(loop, lines), daemon=True, name="pairbot-stdin").start()
    while True:
        line = await lines.get()
        if not line:
            return
        text = line.strip()
        if not text:
            continue
        try:
            if text.startswith("{"):
                result = await engine.submit_signal(signal_from_payload(json.loads(text)))
            else:
                parts = text.split()
                text, signal_id = " ".join(parts[:3]), (parts[3] if len(parts) > 3 else None)
                result = await engine.submit_text(text, signal_id=signal_id)
        except (InvalidSignal, json.JSONDecodeError) as exc:
            log.warning(json.dumps({"event": "signal_invalid", "text": text, "error": str(exc)}))
            continue
        log.info(json.dumps({"event": "signal_result", "text": text, "ok": result.ok}))


async def main(cfg: Optional[Settings] = None) -> None:
    cfg = cfg or Settings.load()
    build_logger("pairbot", file_path=cfg.log_file, json_console=cfg.log_json)

    clock = Clock()
    metrics = EngineMetrics()
    if start_metrics_server(metrics, cfg.metrics_port):
        log.info(json.dumps({"event": "metrics_server_started", "port": cfg.metrics_port}))

    ctx = EngineContext.create(
        cfg,
        build_broker(cfg, clock),
        clock=clock,
        notifier=NotificationHook(build_notifier(cfg), enabled=cfg.notify_enabled),
        metrics=metrics,
    )
    engine = PairEngine(ctx, indicators=CandleIndicators())
    await engine.start()
    reader = asyncio.create_task(read_signals(engine))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await stop_event.wait()
    finally:
        log.info(json.dumps({"event": "shutdown", "open_pairs": len(ctx.store)}))
        reader.cancel()
        await engine.stop()
        await ctx.broker.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\npairbot stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
