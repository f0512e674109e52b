import logging
import math
import threading
import time
from podrec.queue_model import queue_model
from podrec.utils import utils, config


class ControllerState:
    # state of the feedback loop of one container, replaced (never mutated) by each step
    def __init__(self, ui: float = 0.0, last_count: float | None = None, updated_at: float = 0.0):
        self.ui = ui  # integral accumulator
        self.last_count = last_count  # previous reading of the request counter
        self.updated_at = updated_at  # unix timestamp (unit: s)

    def __str__(self) -> str:
        return f'ui: {self.ui:.6f}, last count: {self.last_count}, updated at: {self.updated_at:.0f}'


class ControllerStep:
    # intermediate values of one evaluation of the control law
    def __init__(self, req: float, rt: float, error: float, ke: float, ui: float, ut: float, target_core: float,
                 approx_core: float, approx_ut: float, ui_next: float, singular: bool = False):
        self.req = req  # requests within the control period
        self.rt = rt  # mean response time (unit: ms)
        self.error = error  # unit: s
        self.ke = ke
        self.ui = ui
        self.ut = ut
        self.target_core = target_core  # unsaturated output (unit: core)
        self.approx_core = approx_core  # saturated output (unit: core)
        self.approx_ut = approx_ut
        self.ui_next = ui_next
        self.singular = singular

    def __str__(self) -> str:
        return (f'requests: {self.req}, response time: {self.rt} ms, error: {self.error:.6f} s, ke: {self.ke:.6f}, '
                f'ui: {self.ui:.6f}, ut: {self.ut:.6f}, target core: {self.target_core:.6f}, '
                f'approx core: {self.approx_core:.6f}, approx ut: {self.approx_ut:.6f}, ui next: {self.ui_next:.6f}'
                + (' (singular)' if self.singular else ''))


class ControllerStateStore:
    """
    controller states keyed by container identity, one lock per identity
    """

    def __init__(self):
        self._states: dict[utils.ContainerId, ControllerState] = {}
        self._locks: dict[utils.ContainerId, threading.Lock] = {}
        self._lock = threading.Lock()  # guards the two dicts

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, container_id: utils.ContainerId) -> bool:
        with self._lock:
            return container_id in self._states

    def lock_for(self, container_id: utils.ContainerId) -> threading.Lock:
        with self._lock:
            if container_id not in self._locks:
                self._locks[container_id] = threading.Lock()
            return self._locks[container_id]

    def get(self, container_id: utils.ContainerId) -> ControllerState | None:
        with self._lock:
            return self._states.get(container_id)

    def put(self, container_id: utils.ContainerId, state: ControllerState):
        with self._lock:
            self._states[container_id] = state

    def forget(self, container_id: utils.ContainerId):
        with self._lock:
            self._states.pop(container_id, None)
            self._locks.pop(container_id, None)

    def prune(self, namespace: str, workload: str, keep_containers) -> list[utils.ContainerId]:
        """drop states of containers of the workload that are not tracked anymore"""
        with self._lock:
            stale = [container_id for container_id in self._states
                     if container_id.namespace == namespace and container_id.workload == workload
                     and container_id.container not in keep_containers]
            for container_id in stale:
                self._states.pop(container_id, None)
                self._locks.pop(container_id, None)
        return stale


class FeedbackController:
    """
    discrete-time controller driving the cpu allocation of a container from its response time, the integral term is
    back-calculated from the saturated output (anti-windup)
    """

    def __init__(self, controller_config: config.ControllerConfig | None = None, enable_logging: bool = True):
        self.config = controller_config if controller_config is not None else config.ControllerConfig()
        self.enable_logging = enable_logging

    def __str__(self) -> str:
        return f'Feedback controller (SLA: {self.config.sla_ms} ms)'

    def step(self, state: ControllerState, rt: float, req: float, core_min: float) -> ControllerStep:
        """
        :param state: state of the container, not modified
        :param rt: mean response time (unit: ms)
        :param req: requests since the previous evaluation
        :param core_min: cpu floor of the container (unit: core)
        """
        cfg = self.config
        core_min = min(max(0.0, core_min), cfg.core_max)
        error = cfg.sla_ms / 1000 - rt / 1000
        ke = (cfg.a - 1) / (cfg.p_nom - 1) * error
        ui = state.ui + (1 - cfg.p_nom) * ke
        ut = ui + ke
        singular = False
        try:
            target_core = queue_model.required_cores(req, ut, cfg.a1, cfg.a2, cfg.a3, epsilon=cfg.singular_epsilon)
        except queue_model.SingularModelError:
            singular = True
            target_core = cfg.core_max
        if math.isfinite(target_core):
            # abs() discards the spurious negative root of the model
            approx_core = min(max(abs(target_core), core_min), cfg.core_max)
        else:
            approx_core = cfg.core_max
        approx_ut = queue_model.implied_utilization(req, approx_core, cfg.a1, cfg.a2, cfg.a3,
                                                    epsilon=cfg.singular_epsilon)
        ui_next = approx_ut - ke
        if not math.isfinite(ui_next):
            ui_next = state.ui
        return ControllerStep(req=req, rt=rt, error=error, ke=ke, ui=ui, ut=ut, target_core=target_core,
                              approx_core=approx_core, approx_ut=approx_ut, ui_next=ui_next, singular=singular)

    def evaluate(self, store: ControllerStateStore, container_id: utils.ContainerId, rt: float,
                 request_count: float, core_min: float, now: float | None = None) -> ControllerStep | None:
        """
        run one step for the container with its request counter reading, the state is read and written under the
        container's lock
        :return: None when the reading only establishes the request count baseline or is not a finite number
        """
        if now is None:
            now = time.time()
        if not math.isfinite(rt) or not math.isfinite(request_count):
            utils.logging_or_print(
                f'{str(self)}: non-finite telemetry of {container_id} (response time: {rt} ms, request count: '
                f'{request_count}), ignored.', enable_logging=self.enable_logging, level=logging.WARNING)
            return None
        with store.lock_for(container_id):
            state = store.get(container_id)
            if state is None or state.last_count is None:
                ui = state.ui if state is not None else 0.0
                store.put(container_id, ControllerState(ui=ui, last_count=request_count, updated_at=now))
                utils.logging_or_print(
                    f'{str(self)}: request count baseline of {container_id} set to {request_count}.',
                    enable_logging=self.enable_logging, level=logging.INFO)
                return None
            req = request_count - state.last_count
            if req < 0:  # counter reset
                utils.logging_or_print(
                    f'{str(self)}: request counter of {container_id} decreased ({state.last_count} -> '
                    f'{request_count}), treated as reset.', enable_logging=self.enable_logging, level=logging.WARNING)
                req = request_count
            controller_step = self.step(state, rt, req, core_min)
            store.put(container_id, ControllerState(ui=controller_step.ui_next, last_count=request_count,
                                                    updated_at=now))
        if controller_step.singular:
            utils.logging_or_print(
                f'{str(self)}: singular model for {container_id} (ut = {controller_step.ut:.6f} ~ a1), '
                f'output saturated to {self.config.core_max} core.',
                enable_logging=self.enable_logging, level=logging.WARNING)
        utils.logging_or_print(f'{str(self)}: {container_id} - {str(controller_step)}.',
                               enable_logging=self.enable_logging, level=logging.DEBUG)
        return controller_step
