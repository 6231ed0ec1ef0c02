"""Simulador de líneas de producción que publica estado OEE por MQTT.

Publica cada ``interval`` segundos en ``<base>/<line>/status`` (payload
completo) y ``<base>/<line>/oee`` (solo métricas). Opcionalmente persiste
cada ``persist_interval`` segundos en el log histórico.

Uso:
    python -m jobs.oee_simulator --lines LINE-01,LINE-02 --interval 5
"""

from __future__ import annotations

import argparse
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import orjson
import paho.mqtt.client as mqtt

from common.config import get_settings
from oee_api.persistence.history_log import HistoryLog, HistoryLogError, to_history_record
from oee_api.timeutils import to_iso, utc_now

logger = logging.getLogger(__name__)

STATES = ("idle", "running", "stopped", "error")


@dataclass
class LineCounters:
    """Contadores de un lote en curso."""
    batch_counter: int
    planned_production_time: int = 0
    operating_time: int = 0
    good_count: int = 0
    bad_count: int = 0
    ideal_cycle_time: float = 1.0
    cycle_count: int = 0
    batch_length: int = 20

    def reset_batch(self, rng: random.Random) -> None:
        self.batch_counter += 1
        self.planned_production_time = 0
        self.operating_time = 0
        self.good_count = 0
        self.bad_count = 0
        self.cycle_count = 0
        self.batch_length = 20 + rng.randrange(10)


def compute_metrics(counters: LineCounters) -> dict[str, float]:
    """Availability, performance y quality en % y OEE con performance limitada a 100%."""
    availability = (
        counters.operating_time / counters.planned_production_time
        if counters.planned_production_time > 0 else 0.0
    )
    performance = (
        (counters.good_count + counters.bad_count) / (counters.operating_time / counters.ideal_cycle_time)
        if counters.operating_time > 0 else 0.0
    )
    produced = counters.good_count + counters.bad_count
    quality = counters.good_count / produced if produced > 0 else 0.0
    oee = availability * min(performance, 1.0) * quality * 100

    return {
        "availability": round(availability * 100, 2),
        "performance": round(performance * 100, 2),
        "quality": round(quality * 100, 2),
        "oee": round(oee, 2),
    }


@dataclass
class OEESimulator:
    lines: list[str]
    topic_base: str = "plc"
    history_log: Optional[HistoryLog] = None
    persist_interval: float = 60.0
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self):
        self.counters = {
            line: LineCounters(batch_counter=100 + index)
            for index, line in enumerate(self.lines)
        }
        self._last_persist = 0.0

    def step(self, line: str) -> dict[str, Any]:
        """Avanza un ciclo de la línea y devuelve el payload de estado."""
        c = self.counters[line]
        c.planned_production_time += 1
        c.cycle_count += 1

        state = self.rng.choice(STATES)
        if state == "running":
            c.operating_time += 1
            produced = self.rng.randint(1, 3)
            rejects = 1 if self.rng.random() < 0.1 else 0
            c.good_count += produced - rejects
            c.bad_count += rejects

        if c.cycle_count >= c.batch_length:
            logger.info("[SIM] %s starting new batch", line)
            c.reset_batch(self.rng)

        return {
            "line": line,
            "status": state,
            "batchId": f"BATCH-{c.batch_counter}",
            "counters": {
                "plannedProductionTime": c.planned_production_time,
                "operatingTime": c.operating_time,
                "goodCount": c.good_count,
                "badCount": c.bad_count,
            },
            "metrics": compute_metrics(c),
            "parameters": {
                "temperature": round(20 + self.rng.random() * 5, 2),
                "pressure": round(1 + self.rng.random() * 0.1, 3),
            },
            "alarms": ["Critical fault detected"] if state == "error" else [],
            "timestamp": to_iso(utc_now()),
        }

    def tick(self, publish, now: Optional[float] = None) -> list[dict[str, Any]]:
        """Un ciclo de todas las líneas. ``publish(topic, bytes)`` envía al broker."""
        now = time.time() if now is None else now
        persist = self.history_log is not None and now - self._last_persist >= self.persist_interval

        payloads = []
        for line in self.lines:
            payload = self.step(line)
            publish(f"{self.topic_base}/{line}/status", orjson.dumps(payload))
            publish(f"{self.topic_base}/{line}/oee", orjson.dumps(payload["metrics"]))
            logger.debug("[SIM] Sent %s OEE %.2f%%", line, payload["metrics"]["oee"])

            if persist:
                try:
                    self.history_log.append(to_history_record(payload))
                except (HistoryLogError, OSError) as e:
                    logger.error("[SIM] Failed to persist %s: %s", line, e)
            payloads.append(payload)

        if persist:
            self._last_persist = now
        return payloads


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )
    settings = get_settings()

    p = argparse.ArgumentParser(description="OEE line simulator (MQTT publisher)")
    p.add_argument("--broker-host", default="localhost")
    p.add_argument("--broker-port", type=int, default=1883)
    p.add_argument("--lines", default="LINE-01", help="comma-separated line ids")
    p.add_argument("--topic-base", default=settings.mqtt_topic_base)
    p.add_argument("--interval", type=float, default=5.0, help="publish interval in seconds")
    p.add_argument("--persist-interval", type=float, default=60.0)
    p.add_argument("--no-persist", action="store_true", help="do not write the history file")
    p.add_argument("--cycles", type=int, default=0, help="stop after N cycles (0 = forever)")
    args = p.parse_args()

    history_log = None if args.no_persist else HistoryLog(settings.history_file)
    simulator = OEESimulator(
        lines=[line.strip() for line in args.lines.split(",") if line.strip()],
        topic_base=args.topic_base,
        history_log=history_log,
        persist_interval=args.persist_interval,
    )

    client = mqtt.Client(
        client_id=f"oee-simulator-{int(time.time())}",
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )
    if settings.mqtt_user and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_user, settings.mqtt_password)

    logger.info("[SIM] Connecting to %s:%d", args.broker_host, args.broker_port)
    client.connect(args.broker_host, args.broker_port, keepalive=60)
    client.loop_start()

    cycles = 0
    try:
        while args.cycles == 0 or cycles < args.cycles:
            simulator.tick(lambda topic, body: client.publish(topic, body, qos=0))
            cycles += 1
            time.sleep(args.interval)
    except KeyboardInterrupt:
        logger.info("[SIM] Interrupted")
    finally:
        client.loop_stop()
        client.disconnect()
        logger.info("[SIM] Stopped after %d cycles", cycles)


if __name__ == "__main__":
    main()
