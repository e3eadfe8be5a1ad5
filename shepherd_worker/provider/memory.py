"""
InMemoryProvider -- reference provider for local runs and tests.

Keeps VMs in a dict keyed by (cluster, namespace, name).  Every operation is
idempotent: creating a VM that already exists with the same sizing succeeds,
deleting a VM that is gone succeeds, starting a running VM succeeds.
"""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from typing import Any

from shepherd_kernel.domain.spec import ResourceSpec
from shepherd_kernel.logging_config import get_logger
from shepherd_worker.provider.base import CallContext, ProviderResult, ProviderTarget

logger = get_logger("worker.provider.memory")


class InMemoryProvider:

    name = "in-memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._vms: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._injected: dict[str, deque] = defaultdict(deque)
        self.calls: list[tuple[str, ProviderTarget]] = []

    # ------------------------------------------------------------------
    # Test and demo hooks
    # ------------------------------------------------------------------

    def inject(self, method: str, outcome: ProviderResult | Exception, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` return/raise ``outcome``."""
        with self._lock:
            self._injected[method].extend([outcome] * times)

    def add_vm(self, cluster: str, namespace: str, name: str, power: str = "running", **attrs: Any) -> None:
        """Seed a VM that exists outside the pipeline."""
        with self._lock:
            self._vms[(cluster, namespace, name)] = {
                "name": name,
                "cluster": cluster,
                "namespace": namespace,
                "template_id": attrs.get("template_id"),
                "cpu": attrs.get("cpu"),
                "memory_mb": attrs.get("memory_mb"),
                "disk_gb": attrs.get("disk_gb"),
                "power": power,
            }

    def get_vm(self, cluster: str, namespace: str, name: str) -> dict[str, Any] | None:
        with self._lock:
            vm = self._vms.get((cluster, namespace, name))
            return dict(vm) if vm is not None else None

    def _begin(self, method: str, target: ProviderTarget) -> ProviderResult | None:
        with self._lock:
            self.calls.append((method, target))
            queue = self._injected.get(method)
            injected = queue.popleft() if queue else None
        if isinstance(injected, Exception):
            raise injected
        return injected

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        injected = self._begin("create_vm", target)
        if injected is not None:
            return injected
        key = (target.cluster, target.namespace, target.name)
        desired = {
            "name": target.name,
            "cluster": target.cluster,
            "namespace": target.namespace,
            "template_id": spec.template_id,
            "cpu": spec.cpu,
            "memory_mb": spec.memory_mb,
            "disk_gb": spec.disk_gb,
        }
        with self._lock:
            existing = self._vms.get(key)
            if existing is not None:
                if {k: existing[k] for k in desired} != desired:
                    return ProviderResult.permanent(
                        "VM_ALREADY_EXISTS",
                        f"{target.name} exists with a different spec",
                        dict(existing),
                    )
                return ProviderResult.success(dict(existing))
            vm = {**desired, "power": "running"}
            self._vms[key] = vm
            logger.debug("vm_created", extra={"vm": target.name, "cluster": target.cluster})
            return ProviderResult.success(dict(vm))

    def modify_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        injected = self._begin("modify_vm", target)
        if injected is not None:
            return injected
        with self._lock:
            vm = self._vms.get((target.cluster, target.namespace, target.name))
            if vm is None:
                return ProviderResult.permanent("VM_NOT_FOUND", f"{target.name} does not exist")
            for name in ("template_id", "cpu", "memory_mb", "disk_gb"):
                value = getattr(spec, name)
                if value is not None:
                    vm[name] = value
            return ProviderResult.success(dict(vm))

    def delete_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        injected = self._begin("delete_vm", target)
        if injected is not None:
            return injected
        with self._lock:
            self._vms.pop((target.cluster, target.namespace, target.name), None)
        return ProviderResult.success({"name": target.name, "deleted": True})

    def start_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        return self._set_power("start_vm", target, "running")

    def stop_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        return self._set_power("stop_vm", target, "stopped")

    def restart_vm(self, target: ProviderTarget, spec: ResourceSpec, call: CallContext) -> ProviderResult:
        return self._set_power("restart_vm", target, "running")

    def _set_power(self, method: str, target: ProviderTarget, power: str) -> ProviderResult:
        injected = self._begin(method, target)
        if injected is not None:
            return injected
        with self._lock:
            vm = self._vms.get((target.cluster, target.namespace, target.name))
            if vm is None:
                return ProviderResult.permanent("VM_NOT_FOUND", f"{target.name} does not exist")
            vm["power"] = power
            return ProviderResult.success(dict(vm))
