"""Pod status transformations and the Pod phase state machine."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from kcp.errors import InvalidTransition
from kcp.model import (
    ConditionStatus,
    ConditionType,
    ContainerStatus,
    Pod,
    PodCondition,
    PodPhase,
    TERMINAL_PHASES,
    pod_key,
    utc_iso,
)

CONTAINERS_NOT_READY = "ContainersNotReady"
POD_COMPLETED = "PodCompleted"
POD_FAILED = "PodFailed"

# Allowed phase changes. Succeeded and Failed are terminal for a pod generation.
PHASE_TRANSITIONS: Dict[Optional[PodPhase], Tuple[PodPhase, ...]] = {
    None: (PodPhase.PENDING, PodPhase.UNKNOWN),
    PodPhase.PENDING: (PodPhase.RUNNING, PodPhase.SUCCEEDED, PodPhase.FAILED, PodPhase.UNKNOWN),
    PodPhase.RUNNING: (PodPhase.SUCCEEDED, PodPhase.FAILED, PodPhase.UNKNOWN),
    PodPhase.UNKNOWN: (PodPhase.PENDING, PodPhase.RUNNING, PodPhase.SUCCEEDED, PodPhase.FAILED),
    PodPhase.SUCCEEDED: (),
    PodPhase.FAILED: (),
}


# ----------------------------------------------------------------------
# Getters
# ----------------------------------------------------------------------

def get_id(pod: Pod) -> Optional[str]:
    """Return ``namespace/name`` or None when either part is missing."""
    meta = pod.metadata
    if meta is None or not meta.namespace or not meta.name:
        return None
    return pod_key(meta.namespace, meta.name)


def is_terminal(pod: Pod) -> bool:
    return pod.status.phase in TERMINAL_PHASES


def container_names(pod: Pod) -> List[str]:
    return [c.name for c in pod.spec.containers]


def unready_message(names: Iterable[str]) -> str:
    return f"containers with unready status: [{' '.join(names)}]"


# ----------------------------------------------------------------------
# Condition builders
# ----------------------------------------------------------------------

def pod_initialized_condition(status: ConditionStatus) -> PodCondition:
    return PodCondition(type=ConditionType.INITIALIZED, status=status)


def pod_ready_condition(
    status: ConditionStatus,
    reason: Optional[str] = None,
    message: Optional[str] = None,
) -> PodCondition:
    return PodCondition(type=ConditionType.READY, status=status, reason=reason, message=message)


def pod_containers_ready_condition(
    status: ConditionStatus,
    reason: Optional[str] = None,
    message: Optional[str] = None,
) -> PodCondition:
    return PodCondition(type=ConditionType.CONTAINERS_READY, status=status, reason=reason, message=message)


def set_condition(pod: Pod, condition: PodCondition) -> bool:
    """Replace the condition of the same type, or append it.

    ``last_transition_time`` only moves when the status value changes.
    Returns True if anything changed.
    """
    conditions = pod.status.conditions
    for i, existing in enumerate(conditions):
        if existing.type != condition.type:
            continue
        if (
            existing.status == condition.status
            and existing.reason == condition.reason
            and existing.message == condition.message
        ):
            return False
        if existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        elif condition.last_transition_time is None:
            condition.last_transition_time = utc_iso()
        conditions[i] = condition
        return True
    if condition.last_transition_time is None:
        condition.last_transition_time = utc_iso()
    conditions.append(condition)
    return True


# ----------------------------------------------------------------------
# Phase state machine
# ----------------------------------------------------------------------

def can_transition(current: Optional[PodPhase], target: PodPhase) -> bool:
    if current == target:
        return True
    if current is not None:
        current = PodPhase(current)
    return target in PHASE_TRANSITIONS.get(current, ())


def transition_phase(pod: Pod, target: PodPhase) -> bool:
    """Move the pod to ``target``. Returns True if the phase changed."""
    current = pod.status.phase
    if not can_transition(current, target):
        raise InvalidTransition(
            f"pod {pod.key}: phase {getattr(current, 'value', current)} -> {target.value} not allowed",
            key=pod.key,
        )
    if current == target:
        return False
    pod.status.phase = target
    return True


# ----------------------------------------------------------------------
# Transformations
# ----------------------------------------------------------------------

def set_initial_pod_status(pod: Pod) -> None:
    """Pending with the not-ready baseline conditions.

    Existing Initialized/Ready/ContainersReady entries are replaced, never
    duplicated, so applying this twice leaves one entry per type.
    """
    status = pod.status
    if status.phase is None or status.phase == PodPhase.UNKNOWN:
        status.phase = PodPhase.PENDING

    managed = (ConditionType.INITIALIZED, ConditionType.READY, ConditionType.CONTAINERS_READY)
    status.conditions = [c for c in status.conditions if c.type not in managed]

    message = unready_message(container_names(pod))
    now = utc_iso()
    for cond in (
        pod_initialized_condition(ConditionStatus.TRUE),
        pod_ready_condition(ConditionStatus.FALSE, CONTAINERS_NOT_READY, message),
        pod_containers_ready_condition(ConditionStatus.FALSE, CONTAINERS_NOT_READY, message),
    ):
        cond.last_transition_time = now
        status.conditions.append(cond)

    status.container_statuses = [
        ContainerStatus(name=c.name, image=c.image, state="waiting", reason="ContainerCreating")
        for c in pod.spec.containers
    ]


def mark_running(pod: Pod, host_ip: Optional[str] = None, pod_ip: Optional[str] = None) -> None:
    transition_phase(pod, PodPhase.RUNNING)
    status = pod.status
    status.start_time = status.start_time or utc_iso()
    status.host_ip = host_ip or status.host_ip
    status.pod_ip = pod_ip or status.pod_ip
    set_condition(pod, pod_initialized_condition(ConditionStatus.TRUE))
    for cs in status.container_statuses:
        if cs.state == "waiting":
            cs.state = "running"
            cs.reason = None


def mark_container_ready(pod: Pod, container: str, ready: bool = True) -> bool:
    """Flip one container's readiness and recompute the readiness conditions.

    Returns True once every container reports ready.
    """
    for cs in pod.status.container_statuses:
        if cs.name == container:
            cs.ready = ready
            if ready and cs.state == "waiting":
                cs.state = "running"
    return refresh_readiness(pod)


def refresh_readiness(pod: Pod) -> bool:
    statuses = pod.status.container_statuses
    unready = [cs.name for cs in statuses if not cs.ready]
    all_ready = bool(statuses) and not unready
    if all_ready and pod.status.phase == PodPhase.RUNNING:
        set_condition(pod, pod_ready_condition(ConditionStatus.TRUE))
        set_condition(pod, pod_containers_ready_condition(ConditionStatus.TRUE))
        return True
    if not is_terminal(pod):
        message = unready_message(unready or container_names(pod))
        set_condition(pod, pod_ready_condition(ConditionStatus.FALSE, CONTAINERS_NOT_READY, message))
        set_condition(pod, pod_containers_ready_condition(ConditionStatus.FALSE, CONTAINERS_NOT_READY, message))
    return False


def mark_container_terminated(
    pod: Pod,
    container: str,
    exit_code: int,
    reason: Optional[str] = None,
    message: Optional[str] = None,
) -> None:
    for cs in pod.status.container_statuses:
        if cs.name == container:
            cs.state = "terminated"
            cs.ready = False
            cs.exit_code = exit_code
            cs.reason = reason or ("Completed" if exit_code == 0 else "Error")
            cs.message = message


def settle_terminal_phase(pod: Pod) -> Optional[PodPhase]:
    """Derive Succeeded/Failed once containers have exited.

    Any non-zero exit fails the pod immediately; Succeeded needs every
    container terminated with exit code 0.
    """
    statuses = pod.status.container_statuses
    failed = [cs for cs in statuses if cs.state == "terminated" and cs.exit_code not in (None, 0)]
    if failed:
        first = failed[0]
        mark_failed(pod, first.reason or "Error", first.message or f"container {first.name} exited with code {first.exit_code}")
        return PodPhase.FAILED
    if statuses and all(cs.state == "terminated" for cs in statuses):
        transition_phase(pod, PodPhase.SUCCEEDED)
        pod.status.reason = None
        pod.status.message = None
        _set_not_ready(pod, POD_COMPLETED, None)
        return PodPhase.SUCCEEDED
    refresh_readiness(pod)
    return None


def mark_failed(pod: Pod, reason: str, message: Optional[str]) -> None:
    transition_phase(pod, PodPhase.FAILED)
    pod.status.reason = reason
    pod.status.message = message
    for cs in pod.status.container_statuses:
        cs.ready = False
    _set_not_ready(pod, reason, message)


def _set_not_ready(pod: Pod, reason: Optional[str], message: Optional[str]) -> None:
    set_condition(pod, pod_ready_condition(ConditionStatus.FALSE, reason, message))
    set_condition(pod, pod_containers_ready_condition(ConditionStatus.FALSE, reason, message))
