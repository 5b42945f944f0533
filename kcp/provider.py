"""In-process container runtime used by the local composition and demos."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from kcp.interfaces import ContainerEvent, ContainerEventKind, PodProvider, ProviderError
from kcp.model import Pod, pod_key

logger = logging.getLogger(__name__)


@dataclass
class _SimulatedPod:
	pod: Pod
	cancel: threading.Event = field(default_factory=threading.Event)
	timers: List[threading.Timer] = field(default_factory=list)


class SimulatedPodProvider(PodProvider):
	"""
	Pretends to pull images and run containers.

	Readiness and exits are reported through ``on_event`` (normally
	``Kubelet.handle_runtime_event``) from timer threads, the way a real
	runtime reports asynchronously.
	"""

	def __init__(
		self,
		fetch_delay_s: float = 0.2,
		ready_delay_s: float = 0.1,
		run_duration_s: Optional[float] = None,
		failing_images: Optional[Set[str]] = None,
		on_event: Optional[Callable[[ContainerEvent], None]] = None,
	) -> None:
		"""
		Args:
			fetch_delay_s: Simulated image pull time per pod
			ready_delay_s: Delay between start and containers reporting ready
			run_duration_s: Containers exit with code 0 after this long (None = run forever)
			failing_images: Images whose pull fails with ErrImagePull
			on_event: Callback receiving container lifecycle events
		"""
		self.fetch_delay_s = fetch_delay_s
		self.ready_delay_s = ready_delay_s
		self.run_duration_s = run_duration_s
		self.failing_images = set(failing_images or ())
		self.on_event = on_event

		self._lock = threading.Lock()
		self._pods: Dict[str, _SimulatedPod] = {}
		self.images: Set[str] = set()

	def attach(self, on_event: Callable[[ContainerEvent], None]) -> None:
		self.on_event = on_event

	def _entry(self, pod: Pod) -> _SimulatedPod:
		key = pod.key
		with self._lock:
			entry = self._pods.get(key)
			if entry is None or entry.cancel.is_set():
				entry = _SimulatedPod(pod=pod)
				self._pods[key] = entry
			return entry

	def fetch(self, pod: Pod) -> None:
		entry = self._entry(pod)
		for container in pod.spec.containers:
			if container.image in self.failing_images:
				raise ProviderError("ErrImagePull", f"failed to pull image \"{container.image}\"")
		# interruptible by kill()
		if entry.cancel.wait(self.fetch_delay_s):
			logger.info(f"Image pull for {pod.key} aborted")
			return
		with self._lock:
			self.images.update(c.image for c in pod.spec.containers)

	def run(self, pod: Pod) -> None:
		entry = self._entry(pod)
		if entry.cancel.is_set():
			return
		ns, name = pod.metadata.namespace, pod.metadata.name
		for container in pod.spec.containers:
			ready = threading.Timer(
				self.ready_delay_s,
				self._emit,
				args=(entry, ContainerEvent(ns, name, container.name, ContainerEventKind.READY)),
			)
			entry.timers.append(ready)
			if self.run_duration_s is not None:
				done = threading.Timer(
					self.ready_delay_s + self.run_duration_s,
					self._emit,
					args=(entry, ContainerEvent(ns, name, container.name, ContainerEventKind.EXITED, exit_code=0, reason="Completed")),
				)
				entry.timers.append(done)
		for timer in entry.timers:
			timer.daemon = True
			timer.start()
		logger.info(f"Started {len(pod.spec.containers)} container(s) for {pod.key}")

	def kill(self, namespace: str, name: str) -> None:
		key = pod_key(namespace, name)
		with self._lock:
			entry = self._pods.pop(key, None)
		if entry is None:
			return
		entry.cancel.set()
		for timer in entry.timers:
			timer.cancel()
		logger.info(f"Killed {key}")

	def running(self) -> List[str]:
		with self._lock:
			return sorted(k for k, e in self._pods.items() if e.timers and not e.cancel.is_set())

	def _emit(self, entry: _SimulatedPod, event: ContainerEvent) -> None:
		if entry.cancel.is_set() or self.on_event is None:
			return
		self.on_event(event)
