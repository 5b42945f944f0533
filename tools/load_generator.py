#!/usr/bin/env python3
"""Continuous pod generator for exercising the control plane.

Example:
    python tools/load_generator.py \
        --pods deploy/pods.yaml \
        --count 50 \
        --interval 0.2

Posts pods to the API, then polls until each one reaches a terminal phase or
Running, and prints how long binding and startup took.
"""
from __future__ import annotations

import argparse
import copy
import random
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import yaml

DEFAULT_TEMPLATES = [
    {"namespace": "default", "name": "web", "image": "nginx:1.27"},
    {"namespace": "default", "name": "worker", "image": "busybox:1.36"},
]


def load_templates(path: Optional[Path]) -> List[Dict[str, Any]]:
    if path is None:
        return DEFAULT_TEMPLATES
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        pods = data.get("pods", [])
        return [item for item in pods if isinstance(item, dict)]
    return []


def _stamp() -> str:
    return time.strftime('%H:%M:%S')


def submit(session: requests.Session, base_url: str, template: Dict[str, Any], counter: int) -> Optional[str]:
    body = copy.deepcopy(template)
    if "metadata" in body:
        body["metadata"]["name"] = f"{body['metadata'].get('name', 'pod')}-{counter}"
    else:
        body["name"] = f"{body.get('name', 'pod')}-{counter}"
    response = session.post(f"{base_url}/pods", json=body, timeout=20)
    data = response.json()
    if response.status_code != 201:
        print(f"[{_stamp()}] submit failed ({response.status_code}): {data.get('message') or data.get('error')}")
        return None
    meta = data["metadata"]
    return f"{meta['namespace']}/{meta['name']}"


def poll(session: requests.Session, base_url: str, pending: Dict[str, float], started: Dict[str, float]) -> None:
    for key in list(pending):
        response = session.get(f"{base_url}/pods/{key}", timeout=10)
        if response.status_code == 404:
            pending.pop(key)
            continue
        pod = response.json()
        phase = (pod.get("status") or {}).get("phase")
        if phase in ("Running", "Succeeded", "Failed"):
            submitted = pending.pop(key)
            started[key] = time.time() - submitted
            node = (pod.get("spec") or {}).get("node_name")
            print(f"[{_stamp()}] {key} -> {phase} on {node} after {started[key]:.2f}s")


def main() -> None:
    parser = argparse.ArgumentParser(description="Control plane load generator")
    parser.add_argument("--pods", default=None, type=Path, help="YAML file with pod templates")
    parser.add_argument("--url", default="http://localhost:8080")
    parser.add_argument("--count", type=int, default=20, help="pods to submit (0 = forever)")
    parser.add_argument("--interval", type=float, default=0.5, help="seconds between submissions")
    parser.add_argument("--timeout", type=float, default=60.0, help="seconds to wait for pods to start")
    args = parser.parse_args()

    templates = load_templates(args.pods)
    if not templates:
        raise SystemExit(f"No pod templates found in {args.pods}")

    session = requests.Session()
    pending: Dict[str, float] = {}
    started: Dict[str, float] = {}
    counter = 0

    try:
        while args.count == 0 or counter < args.count:
            counter += 1
            try:
                key = submit(session, args.url, random.choice(templates), counter)
                if key:
                    pending[key] = time.time()
                poll(session, args.url, pending, started)
            except requests.RequestException as exc:
                print(f"[{_stamp()}] error: {exc}")
                time.sleep(5)
            time.sleep(max(0.05, args.interval))

        deadline = time.time() + args.timeout
        while pending and time.time() < deadline:
            poll(session, args.url, pending, started)
            time.sleep(0.5)
    except KeyboardInterrupt:
        print("Stopping load generator")

    if started:
        mean = sum(started.values()) / len(started)
        print(f"{len(started)} pod(s) started, mean {mean:.2f}s, {len(pending)} still pending")
    else:
        print(f"No pods started, {len(pending)} still pending")


if __name__ == "__main__":
    main()
