"""Backend cluster : contrat consommé par le moteur et implémentation kubectl."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Protocol, Tuple

from bascule.logging.logger import CommandError, run_command
from bascule.store.models import ServiceRecord


class ClusterBackend(Protocol):
    def set_image(self, service: str, image: str) -> None: ...

    def scale(self, service: str, replicas: int) -> None: ...

    def set_update_strategy(
        self, service: str, strategy_type: str, max_unavailable: str = "25%", max_surge: str = "25%"
    ) -> None: ...

    def wait_for_rollout(self, service: str, timeout: float) -> bool: ...

    def pod_readiness(self, service: str) -> Tuple[int, int]: ...

    def exec_probe(self, service: str, path: str) -> Tuple[int, str]: ...

    def describe(self, service: str) -> ServiceRecord: ...

    def create_shadow_deployment(self, base_service: str, name: str, image: str, replicas: int) -> None: ...

    def delete_deployment(self, name: str) -> None: ...


class KubectlBackend:
    """Pilote un namespace Kubernetes via `kubectl`.

    Le conteneur principal d'un déploiement porte le même nom que le service.
    """

    def __init__(
        self,
        namespace: str,
        logger: Optional[logging.Logger] = None,
        service_port: int = 8080,
        kubectl: str = "kubectl",
    ) -> None:
        self.namespace = namespace
        self.logger = logger or logging.getLogger(__name__)
        self.service_port = service_port
        self.kubectl = kubectl

    def _kubectl(self, *args: str, input_text: Optional[str] = None, quiet: bool = False) -> str:
        return run_command(
            [self.kubectl, "-n", self.namespace, *args],
            logger=self.logger,
            input_text=input_text,
            quiet=quiet,
        )

    def _deployment(self, name: str) -> Dict[str, Any]:
        return json.loads(self._kubectl("get", "deployment", name, "-o", "json", quiet=True))

    def set_image(self, service: str, image: str) -> None:
        self._kubectl("set", "image", f"deployment/{service}", f"{service}={image}")

    def scale(self, service: str, replicas: int) -> None:
        self._kubectl("scale", f"deployment/{service}", f"--replicas={replicas}")

    def set_update_strategy(
        self, service: str, strategy_type: str, max_unavailable: str = "25%", max_surge: str = "25%"
    ) -> None:
        if strategy_type == "RollingUpdate":
            strategy: Dict[str, Any] = {
                "type": "RollingUpdate",
                "rollingUpdate": {"maxUnavailable": max_unavailable, "maxSurge": max_surge},
            }
        else:
            # Recreate interdit le bloc rollingUpdate
            strategy = {"type": strategy_type, "rollingUpdate": None}
        patch = json.dumps({"spec": {"strategy": strategy}})
        self._kubectl("patch", "deployment", service, f"--patch={patch}")

    def wait_for_rollout(self, service: str, timeout: float) -> bool:
        try:
            self._kubectl("rollout", "status", f"deployment/{service}", f"--timeout={int(timeout)}s")
        except CommandError:
            return False
        return True

    def pod_readiness(self, service: str) -> Tuple[int, int]:
        payload = self._deployment(service)
        desired = int(payload.get("spec", {}).get("replicas") or 0)
        ready = int(payload.get("status", {}).get("readyReplicas") or 0)
        return ready, desired

    def exec_probe(self, service: str, path: str) -> Tuple[int, str]:
        url = f"http://{service}.{self.namespace}.svc.cluster.local:{self.service_port}{path}"
        try:
            output = self._kubectl(
                "exec",
                f"deployment/{service}",
                "--",
                "curl",
                "-s",
                "-w",
                "\n%{http_code}",
                url,
                quiet=True,
            )
        except CommandError as exc:
            return 0, exc.output
        body, _, code = output.rstrip().rpartition("\n")
        try:
            return int(code), body
        except ValueError:
            return 0, output

    def describe(self, service: str) -> ServiceRecord:
        payload = self._deployment(service)
        containers = payload["spec"]["template"]["spec"]["containers"]
        container = next((c for c in containers if c.get("name") == service), containers[0])
        desired = int(payload["spec"].get("replicas") or 0)
        ready = int(payload.get("status", {}).get("readyReplicas") or 0)
        # readyReplicas peut dépasser spec.replicas pendant un surge
        return ServiceRecord(
            name=service,
            image=container["image"],
            desired_replicas=desired,
            ready_replicas=min(ready, desired),
        )

    def create_shadow_deployment(self, base_service: str, name: str, image: str, replicas: int) -> None:
        manifest = self._deployment(base_service)
        metadata = manifest["metadata"]
        manifest["metadata"] = {
            "name": name,
            "namespace": self.namespace,
            "labels": {**metadata.get("labels", {}), "track": "canary"},
        }
        manifest.pop("status", None)
        spec = manifest["spec"]
        spec["replicas"] = replicas
        spec["selector"].setdefault("matchLabels", {})["track"] = "canary"
        template = spec["template"]
        template["metadata"].setdefault("labels", {})["track"] = "canary"
        for container in template["spec"]["containers"]:
            if container.get("name") == base_service:
                container["image"] = image
        self._kubectl("apply", "-f", "-", input_text=json.dumps(manifest))

    def delete_deployment(self, name: str) -> None:
        self._kubectl("delete", "deployment", name, "--ignore-not-found=true")
