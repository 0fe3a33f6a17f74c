"""
Drive a running scalesim service over HTTP with a simple scaling strategy.

Usage:
    python tools/play.py --url http://localhost:8080 --level 4 --step-ms 500

Every step the client advances the logical clock (unless the service runs
its own realtime pump), reads the snapshot and upgrades the busiest node
whenever its utilization crosses ``--threshold`` and money allows.
"""

from __future__ import annotations

import argparse
import time
from typing import Any, Dict, Optional

import requests


def busiest_node(snapshot: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    best = None
    best_ratio = -1.0
    for node in snapshot.get("nodes", []):
        if node["kind"] == "user" or not node["active"] or node["capacity"] <= 0:
            continue
        ratio = node["current_load"] / node["capacity"]
        if ratio > best_ratio:
            best, best_ratio = node, ratio
    return best


def main() -> None:
    parser = argparse.ArgumentParser(description="scalesim HTTP player")
    parser.add_argument("--url", default="http://localhost:8080")
    parser.add_argument("--level", type=int, default=None, help="reset to this level first")
    parser.add_argument("--step-ms", type=float, default=500.0, help="logical ms advanced per step")
    parser.add_argument("--interval", type=float, default=0.2, help="seconds between steps")
    parser.add_argument("--threshold", type=float, default=0.8, help="utilization that triggers an upgrade")
    parser.add_argument("--realtime", action="store_true", help="service runs its own pump, do not advance")
    args = parser.parse_args()

    base = args.url.rstrip("/")
    session = requests.Session()
    if args.level is not None:
        response = session.post(f"{base}/reset", json={"level": args.level}, timeout=10)
        response.raise_for_status()
    session.post(f"{base}/start", timeout=10).raise_for_status()

    while True:
        try:
            if not args.realtime:
                session.post(f"{base}/advance", json={"ms": args.step_ms}, timeout=10).raise_for_status()
            snapshot = session.get(f"{base}/snapshot", timeout=10).json()
            stats = snapshot["stats"]
            print(
                f"[{time.strftime('%H:%M:%S')}] t={snapshot['now_ms']:.0f}ms "
                f"total={stats['total']}/{snapshot['level']['target_total']} "
                f"errors={stats['errors']} ({stats['error_rate_pct']:.2f}%) money=${stats['money']}"
            )
            if stats["is_game_over"]:
                print("WON" if stats["won"] else "LOST")
                break
            node = busiest_node(snapshot)
            if node and node["current_load"] / node["capacity"] >= args.threshold:
                response = session.post(f"{base}/nodes/{node['key']}/upgrade", timeout=10)
                if response.ok and response.json().get("upgraded"):
                    print(f"  upgraded {node['key']} -> capacity {response.json()['node']['capacity']}")
            time.sleep(max(0.0, args.interval))
        except KeyboardInterrupt:
            print("Stopping player")
            break
        except requests.RequestException as exc:
            print(f"[{time.strftime('%H:%M:%S')}] error: {exc}")
            time.sleep(2)


if __name__ == "__main__":
    main()
