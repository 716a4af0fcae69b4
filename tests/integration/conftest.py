"""Integration test fixtures using pytest-kubernetes for cluster management."""
import os
import subprocess
import time
from pathlib import Path
from typing import Optional

import pytest
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from pytest_kubernetes.providers import AClusterManager


SERVER_IMAGE = "slow-server:test"
NAMESPACE = "slow-server"
APP_NAME = "slow-server"
START_TIME = "5s"


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Expose test outcome on the test item so fixtures can react in teardown.

    Pattern:
      if request.node.rep_call.failed: ...
    """
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)


def _debug_dump(k8s: AClusterManager, namespace: str = NAMESPACE) -> None:
    """Best-effort debug dump of the slow-server pods (events + logs). Never raises."""

    def safe_kubectl(args: list[str]) -> str:
        try:
            return k8s.kubectl(args, as_dict=False)
        except Exception as e:  # noqa: BLE001 - best-effort debug helper
            return f"[debug-dump] failed: kubectl {' '.join(args)}: {e}"

    print("\n==================== DEBUG DUMP (slow-server) ====================")
    print(safe_kubectl(["get", "pods", "-n", namespace, "-l", f"app={APP_NAME}", "-o", "wide"]))
    print(safe_kubectl(["describe", "deploy", APP_NAME, "-n", namespace]))
    print("\n--- events (newest last) ---")
    print(safe_kubectl(["get", "events", "-n", namespace, "--sort-by=.lastTimestamp"]))

    pods = safe_kubectl(["get", "pods", "-n", namespace, "-l", f"app={APP_NAME}", "-o", "name"])
    pod_names = [line.strip() for line in pods.splitlines() if line.strip().startswith("pod/")]
    for pod in pod_names[:2]:
        print(f"\n--- logs: {pod} (tail 200) ---")
        print(safe_kubectl(["logs", pod, "-n", namespace, "--tail=200"]))


def _build_image(image_name: str, dockerfile_path: Path, context_path: Path) -> None:
    """Build Docker image using subprocess to avoid credential store issues."""
    result = subprocess.run(
        ["docker", "images", "-q", image_name],
        capture_output=True, text=True
    )
    if result.stdout.strip():
        return  # Image already exists

    subprocess.run(
        ["docker", "build", "-t", image_name, "-f", str(dockerfile_path), str(context_path)],
        check=True
    )


def _server_container() -> client.V1Container:
    return client.V1Container(
        name="app",
        image=SERVER_IMAGE,
        image_pull_policy="Never",
        env=[
            client.V1EnvVar(name="START_TIME", value=START_TIME),
            client.V1EnvVar(name="PORT", value="8080"),
        ],
        ports=[client.V1ContainerPort(name="http", container_port=8080)],
        liveness_probe=client.V1Probe(
            http_get=client.V1HTTPGetAction(path="/healthy", port="http"),
            initial_delay_seconds=10,
            period_seconds=2,
            failure_threshold=2,
        ),
        readiness_probe=client.V1Probe(
            http_get=client.V1HTTPGetAction(path="/ready", port="http"),
            period_seconds=1,
            failure_threshold=1,
            success_threshold=1,
        ),
    )


@pytest.fixture
def cluster(k8s: AClusterManager, request):
    """
    Cluster managed by pytest-kubernetes with the slow-server image loaded.

    pytest-kubernetes picks the first available provider (k3d, kind, minikube);
    override with --k8s-provider.
    """
    project_root = Path(__file__).parent.parent.parent
    always = os.environ.get("SLOW_SERVER_TEST_DEBUG") == "1"

    try:
        if not k8s.ready(timeout=5):
            print(f"[cluster] Creating cluster '{k8s.cluster_name}'...")
            k8s.create()
        else:
            print(f"[cluster] Cluster '{k8s.cluster_name}' already exists and is ready")

        _build_image(SERVER_IMAGE, project_root / "Dockerfile", project_root)
        k8s.load_image(SERVER_IMAGE)

        os.environ["KUBECONFIG"] = str(k8s.kubeconfig)
        config.load_kube_config(config_file=str(k8s.kubeconfig))
        core_v1 = client.CoreV1Api()
        apps_v1 = client.AppsV1Api()

        try:
            core_v1.create_namespace(client.V1Namespace(metadata=client.V1ObjectMeta(name=NAMESPACE)))
        except ApiException as e:
            if e.status != 409:  # Already exists
                raise

        k8s.core_v1 = core_v1
        k8s.apps_v1 = apps_v1

        yield k8s

    except Exception:
        if always:
            _debug_dump(k8s)
        raise

    finally:
        rep_call = getattr(request.node, "rep_call", None)
        failed = bool(rep_call and rep_call.failed)
        if always or failed:
            _debug_dump(k8s)


@pytest.fixture
def slow_server_pod(cluster: AClusterManager) -> str:
    """Deploy a single-replica slow-server Deployment and return its pod name."""
    apps_v1 = cluster.apps_v1
    core_v1 = cluster.core_v1

    try:
        apps_v1.create_namespaced_deployment(
            namespace=NAMESPACE,
            body=client.V1Deployment(
                metadata=client.V1ObjectMeta(name=APP_NAME),
                spec=client.V1DeploymentSpec(
                    replicas=1,
                    selector=client.V1LabelSelector(match_labels={"app": APP_NAME}),
                    template=client.V1PodTemplateSpec(
                        metadata=client.V1ObjectMeta(labels={"app": APP_NAME}),
                        spec=client.V1PodSpec(
                            termination_grace_period_seconds=10,
                            containers=[_server_container()],
                        ),
                    ),
                ),
            ),
        )
    except ApiException as e:
        if e.status != 409:
            raise

    deadline = time.time() + 120
    pod_name: Optional[str] = None
    while time.time() < deadline:
        pods = core_v1.list_namespaced_pod(NAMESPACE, label_selector=f"app={APP_NAME}").items
        live = [p for p in pods if p.metadata and not p.metadata.deletion_timestamp]
        if live:
            pod_name = live[0].metadata.name
            break
        time.sleep(1)
    else:
        raise RuntimeError("slow-server pod was not created within timeout")

    yield pod_name

    try:
        apps_v1.delete_namespaced_deployment(APP_NAME, NAMESPACE, propagation_policy="Foreground")
    except ApiException:
        pass


def pod_condition(core_v1: client.CoreV1Api, name: str, condition: str = "Ready") -> bool:
    pod = core_v1.read_namespaced_pod(name, NAMESPACE)
    conditions = (pod.status.conditions if pod.status else None) or []
    return any(c.type == condition and c.status == "True" for c in conditions)


def restart_count(core_v1: client.CoreV1Api, name: str) -> int:
    pod = core_v1.read_namespaced_pod(name, NAMESPACE)
    statuses = (pod.status.container_statuses if pod.status else None) or []
    return sum(s.restart_count or 0 for s in statuses)


def proxy_get(core_v1: client.CoreV1Api, name: str, path: str) -> str:
    """GET a path on the pod through the API server proxy."""
    return core_v1.connect_get_namespaced_pod_proxy_with_path(
        f"{name}:8080", NAMESPACE, path.lstrip("/")
    )


@pytest.fixture
def wait_for_condition(cluster: AClusterManager):
    """Poll until predicate() is true or the timeout expires."""
    def _wait(predicate, timeout: int = 60, poll: float = 1.0, what: str = "condition"):
        deadline = time.time() + timeout
        while time.time() < deadline:
            try:
                if predicate():
                    return True
            except ApiException:
                pass
            time.sleep(poll)
        raise TimeoutError(f"{what} not reached within {timeout}s")
    return _wait
