#!/usr/bin/env python3
# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
CLI for a kubeloop cluster

Usage:
    python -m kubeloop.cli.cluster_manager serve --port 8000
    python -m kubeloop.cli.cluster_manager apply -f objects.json
    python -m kubeloop.cli.cluster_manager get Deployment web
    python -m kubeloop.cli.cluster_manager status Deployment web
    python -m kubeloop.cli.cluster_manager delete Deployment web
    python -m kubeloop.cli.cluster_manager demo

Every command except ``serve`` and ``demo`` talks to a running server.
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List

import httpx

from kubeloop.config import settings, setup_logging

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "http://127.0.0.1:8000"
APP_IMPORT_PATH = "kubeloop.app:app"


def _object_url(server: str, namespace: str, kind: str, name: str = None) -> str:
    url = f"{server.rstrip('/')}/api/v1/namespaces/{namespace}/{kind}"
    return f"{url}/{name}" if name else url


def _print(payload: Any):
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _check(response: httpx.Response) -> Dict[str, Any]:
    if response.status_code >= 400:
        try:
            detail = response.json()
        except ValueError:
            detail = {"message": response.text}
        raise RuntimeError(f"{response.status_code} {detail.get('code', '')}: {detail.get('message', detail)}")
    return response.json()


def load_manifests(path: str) -> List[Dict[str, Any]]:
    """A manifest file holds one object or a list of objects"""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict) and "items" in data:
        data = data["items"]
    return data if isinstance(data, list) else [data]


def apply_manifests(server: str, path: str):
    with httpx.Client(timeout=30) as client:
        for manifest in load_manifests(path):
            namespace = manifest.get("namespace") or "default"
            body = {
                "spec": manifest.get("spec", {}),
                "labels": manifest.get("labels", {}),
                "annotations": manifest.get("annotations", {}),
            }
            if "finalizers" in manifest:
                body["finalizers"] = manifest["finalizers"]
            if "expectedVersion" in manifest:
                body["expectedVersion"] = manifest["expectedVersion"]
            url = _object_url(server, namespace, manifest["kind"], manifest["name"])
            result = _check(client.put(url, json=body))
            print(f"{manifest['kind']}/{manifest['name']} applied (resourceVersion {result['resourceVersion']})")


def get_object(server: str, namespace: str, kind: str, name: str = None, selector: str = None):
    params = {"labelSelector": selector} if selector else None
    with httpx.Client(timeout=30) as client:
        _print(_check(client.get(_object_url(server, namespace, kind, name), params=params)))


def get_status(server: str, namespace: str, kind: str, name: str):
    with httpx.Client(timeout=30) as client:
        _print(_check(client.get(_object_url(server, namespace, kind, name) + "/status")))


def delete_object(server: str, namespace: str, kind: str, name: str, orphan: bool = False):
    params = {"propagationPolicy": "Orphan" if orphan else "Background"}
    with httpx.Client(timeout=30) as client:
        result = _check(client.delete(_object_url(server, namespace, kind, name), params=params))
    state = "terminating" if result.get("deletionTimestamp") else "deleted"
    print(f"{kind}/{name} {state}")


def serve(host: str, port: int):
    import uvicorn

    uvicorn.run(APP_IMPORT_PATH, host=host, port=port, log_level=settings.log_level.lower())


def run_demo() -> Dict[str, Any]:
    """Run a small cluster in process and print where it converged"""
    from kubeloop.controller.manager import ControllerManager
    from kubeloop.service.object_service import ObjectService
    from kubeloop.sim.node_agent import NodeAgentSimulator
    from kubeloop.store.object_store import ObjectStore

    store = ObjectStore()
    manager = ControllerManager(store=store, node_agent=NodeAgentSimulator(store))
    service = ObjectService(manager)

    for name, zone in (("node-a", "zone-1"), ("node-b", "zone-1"), ("node-c", "zone-2")):
        service.submit("Node", None, name, {}, labels={"zone": zone})
    template = {"labels": {"app": "web"}, "spec": {"image": "web:1"}}
    service.submit(
        "Deployment", "default", "web", {"replicas": 3, "selector": {"matchLabels": {"app": "web"}}, "template": template}
    )
    manager.run_until_settled()
    logger.info("Rolling web to web:2")
    current = service.get("Deployment", "default", "web")
    spec = dict(current.spec)
    spec["template"] = {"labels": {"app": "web"}, "spec": {"image": "web:2"}}
    service.submit("Deployment", "default", "web", spec, expected_version=current.resource_version)
    manager.run_until_settled()

    pods = service.list("Pod", "default")
    summary = {
        "deployment": service.get_status("Deployment", "default", "web").status,
        "pods": {pod.name: {"node": pod.spec.get("nodeName"), "image": pod.spec.get("image")} for pod in pods.items},
    }
    _print(summary)
    manager.executor.shutdown()
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="kubeloop cluster CLI")
    parser.add_argument("--server", default=DEFAULT_SERVER, help="API server base URL")
    parser.add_argument("-n", "--namespace", default="default", help="Namespace")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the API server with controllers")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    apply_parser = subparsers.add_parser("apply", help="Create or update objects from a JSON file")
    apply_parser.add_argument("-f", "--filename", required=True, help="JSON manifest file")

    get_parser = subparsers.add_parser("get", help="Show an object, or list a kind")
    get_parser.add_argument("kind")
    get_parser.add_argument("name", nargs="?")
    get_parser.add_argument("-l", "--selector", help="Label selector, e.g. app=web,tier!=db")

    status_parser = subparsers.add_parser("status", help="Show an object's status")
    status_parser.add_argument("kind")
    status_parser.add_argument("name")

    delete_parser = subparsers.add_parser("delete", help="Delete an object")
    delete_parser.add_argument("kind")
    delete_parser.add_argument("name")
    delete_parser.add_argument("--orphan", action="store_true", help="Keep dependents")

    subparsers.add_parser("demo", help="Run an in-process demo cluster")

    args = parser.parse_args(argv)
    setup_logging()

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "serve":
            serve(args.host, args.port)
        elif args.command == "apply":
            apply_manifests(args.server, args.filename)
        elif args.command == "get":
            get_object(args.server, args.namespace, args.kind, args.name, args.selector)
        elif args.command == "status":
            get_status(args.server, args.namespace, args.kind, args.name)
        elif args.command == "delete":
            delete_object(args.server, args.namespace, args.kind, args.name, args.orphan)
        elif args.command == "demo":
            run_demo()
        else:
            print(f"Unknown command: {args.command}")
            return 1
    except (httpx.HTTPError, RuntimeError, OSError, ValueError) as e:
        logger.error(f"Command failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
