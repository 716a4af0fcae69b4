#!/usr/bin/env python3
"""
Probe TUI - Terminal UI for watching slow-server pods react to probe flips.

Watches the pods matching a label selector through the Kubernetes API and
shows their phase, Ready condition and restart count. With --url it also
polls /healthy and /ready directly, and --flip sends one /debug/<action>
before the dashboard starts.
"""

import argparse
import queue
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import kubernetes
import requests
from kubernetes import watch
from kubernetes.client import CoreV1Api, V1Pod
from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

DEBUG_ACTIONS = ("healthy", "unhealthy", "ready", "noready")
PROBE_PATHS = ("/healthy", "/ready")


def is_pod_ready(pod: V1Pod) -> bool:
    """Check if a pod is Ready."""
    conditions: List = (pod.status.conditions if pod.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


def restart_count(pod: V1Pod) -> int:
    """Sum container restarts; liveness failures show up here."""
    statuses: List = (pod.status.container_statuses if pod.status else None) or []
    return sum(s.restart_count or 0 for s in statuses)


def pod_phase(pod: V1Pod) -> str:
    if pod.metadata and pod.metadata.deletion_timestamp:
        return "Terminating"
    return (pod.status.phase if pod.status else None) or "Unknown"


def format_age(started: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Format the time since started as a short age string."""
    if started is None:
        return "N/A"
    now = now or datetime.now(timezone.utc)
    seconds = max(int((now - started).total_seconds()), 0)
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    else:
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def summarize_pods(pods: List[V1Pod]) -> Dict[str, int]:
    """Count pods by readiness and total restarts."""
    ready = sum(1 for p in pods if is_pod_ready(p))
    return {
        "total": len(pods),
        "ready": ready,
        "not_ready": len(pods) - ready,
        "restarts": sum(restart_count(p) for p in pods),
    }


def probe(session: requests.Session, base_url: str, path: str) -> Tuple[Optional[int], str]:
    """GET base_url+path; (None, error) when the server is unreachable."""
    try:
        resp = session.get(base_url.rstrip("/") + path, timeout=2)
    except requests.RequestException as e:
        return None, type(e).__name__
    return resp.status_code, resp.text.strip()


def flip(base_url: str, action: str) -> str:
    """Send one debug action and return the server's confirmation."""
    resp = requests.get(f"{base_url.rstrip('/')}/debug/{action}", timeout=5)
    resp.raise_for_status()
    return resp.text.strip()


def render_dashboard(
    pods: List[V1Pod],
    probes: Dict[str, Tuple[Optional[int], str]],
    selector: str,
) -> Panel:
    """Render the probe dashboard."""
    summary = summarize_pods(pods)

    header = Table.grid(padding=(0, 2))
    header.add_column(style="bold")
    header.add_column()
    header.add_row("Selector:", selector)
    header.add_row("Pods:", f"{summary['ready']}/{summary['total']} ready")
    restarts = Text(str(summary["restarts"]), style="bold red" if summary["restarts"] else "")
    header.add_row("Restarts:", restarts)

    table = Table(box=box.SIMPLE_HEAVY)
    table.add_column("Pod")
    table.add_column("Phase")
    table.add_column("Ready", justify="center")
    table.add_column("Restarts", justify="right")
    table.add_column("Age", justify="right")

    for pod in sorted(pods, key=lambda p: p.metadata.name if p.metadata else ""):
        ready = is_pod_ready(pod)
        started = pod.status.start_time if pod.status else None
        table.add_row(
            pod.metadata.name if pod.metadata else "?",
            pod_phase(pod),
            Text("✅" if ready else "⏳"),
            str(restart_count(pod)),
            format_age(started),
        )

    parts: List[Any] = [header, Text(""), table]

    if probes:
        probe_table = Table(box=box.SIMPLE, title="Direct probes")
        probe_table.add_column("Path")
        probe_table.add_column("Status", justify="right")
        probe_table.add_column("Body")
        for path, (code, body) in probes.items():
            if code is None:
                style = "dim"
            elif code == 200:
                style = "green"
            else:
                style = "bold red"
            probe_table.add_row(path, Text(str(code or "-"), style=style), body)
        parts.extend([Text(""), probe_table])

    legend = Text()
    legend.append("Legend: ", style="bold")
    legend.append("✅ Ready  ", style="bold")
    legend.append("⏳ Not ready (startup delay or /debug/noready)", style="bold")
    parts.extend([Text(""), legend])

    return Panel(Group(*parts), title="slow-server probes", border_style="blue")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Watch slow-server pods and their probe state")
    parser.add_argument("--namespace", required=True, help="Namespace of the pods")
    parser.add_argument("--selector", default="app=slow-server", help="Label selector for the pods")
    parser.add_argument("--url", help="Base URL to poll /healthy and /ready directly")
    parser.add_argument("--flip", choices=DEBUG_ACTIONS, help="Send /debug/<action> to --url before watching")
    args = parser.parse_args()

    if args.flip and not args.url:
        parser.error("--flip requires --url")

    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        try:
            kubernetes.config.load_kube_config()
        except Exception as e:
            print(f"Failed to load Kubernetes config: {e}", file=sys.stderr)
            sys.exit(1)

    core_api = CoreV1Api()
    console = Console()
    session = requests.Session()

    if args.flip:
        try:
            console.print(f"[yellow]{flip(args.url, args.flip)}[/yellow]")
        except requests.RequestException as e:
            console.print(f"[red]Failed to send /debug/{args.flip}: {e}[/red]")
            sys.exit(1)

    def get_pods() -> List[V1Pod]:
        return core_api.list_namespaced_pod(
            namespace=args.namespace,
            label_selector=args.selector,
        ).items

    def get_probes() -> Dict[str, Tuple[Optional[int], str]]:
        if not args.url:
            return {}
        return {path: probe(session, args.url, path) for path in PROBE_PATHS}

    def refresh(live: Live) -> None:
        live.update(render_dashboard(get_pods(), get_probes(), args.selector))

    def watch_updates(live: Live) -> None:
        """Refresh on every pod event, and at least once a second for direct probes."""
        w = watch.Watch()
        events: "queue.Queue[Tuple[str, Any]]" = queue.Queue()

        def stream_worker():
            try:
                for event in w.stream(
                    core_api.list_namespaced_pod,
                    namespace=args.namespace,
                    label_selector=args.selector,
                ):
                    events.put(("pod", event))
            except Exception as e:
                events.put(("error", e))

        try:
            refresh(live)
            threading.Thread(target=stream_worker, daemon=True).start()
            while True:
                try:
                    kind, event = events.get(timeout=1.0)
                    if kind == "error":
                        raise event
                except queue.Empty:
                    pass
                refresh(live)
        except Exception as e:
            live.update(Panel(f"[red]Error: {e}[/red]", title="Error"))
            time.sleep(5)
        finally:
            w.stop()

    try:
        with Live(console=console, refresh_per_second=10, screen=True) as live:
            while True:
                watch_updates(live)
    except KeyboardInterrupt:
        console.print("\n[yellow]Exiting...[/yellow]")
        sys.exit(0)
    finally:
        session.close()


if __name__ == "__main__":
    main()
