import time
import logging
from concurrent.futures import ThreadPoolExecutor

from apscheduler.schedulers.background import BackgroundScheduler
from podrec.controller import feedback_controller
from podrec.estimator import estimator
from podrec.history import usage_history
from podrec.metric_source import base
from podrec.utils import utils, config


class PodResourceRecommender:
    """
    computes the recommendation of every container of a pod: estimator chains for all bounds, with the cpu target of
    selected containers driven by the response time feedback controller
    """

    def __init__(self, recommender_config: config.RecommenderConfig | None = None,
                 metric_source: base.MetricSource | None = None,
                 state_store: feedback_controller.ControllerStateStore | None = None,
                 override_predicate=None):
        self.config = recommender_config if recommender_config is not None else config.RecommenderConfig()
        self.enable_logging = self.config.enable_logging
        self.metric_source = metric_source
        self.state_store = state_store if state_store is not None else feedback_controller.ControllerStateStore()
        # override_predicate(container_id) -> bool, replaces the configured override_containers when given
        if override_predicate is not None and not callable(override_predicate):
            raise ValueError(f'override_predicate must be callable, received {override_predicate} instead')
        self.override_predicate = override_predicate
        self.target_estimator, self.lower_bound_estimator, self.upper_bound_estimator = \
            estimator.create_estimators(self.config.estimator)
        self.controller = feedback_controller.FeedbackController(self.config.controller,
                                                                 enable_logging=self.enable_logging)

    def __str__(self) -> str:
        return 'Pod resource recommender'

    def select_mode(self, container_id: utils.ContainerId) -> utils.RecommendationMode:
        if self.override_predicate is not None:
            matched = self.override_predicate(container_id)
        else:
            matched = container_id in self.config.override_containers
        if matched and self.metric_source is not None:
            return utils.RecommendationMode.CONTROLLER_OVERRIDE
        return utils.RecommendationMode.ESTIMATOR_ONLY

    def get_recommended_pod_resources(self, container_histories: dict[str, usage_history.ContainerUsageHistory],
                                      namespace: str = 'default', workload: str = '') \
            -> dict[str, utils.RecommendedContainerResources]:
        """
        :param container_histories: container name -> usage history
        :return: container name -> recommendation, containers whose evaluation failed are left out
        """
        recommendation = {}
        if len(container_histories) == 0:
            return recommendation
        min_resources = estimator.pod_min_resources(self.config.estimator, len(container_histories))
        estimators = (self.target_estimator.with_min_resources(min_resources),
                      self.lower_bound_estimator.with_min_resources(min_resources),
                      self.upper_bound_estimator.with_min_resources(min_resources))
        core_min = utils.cores_from_cpu_amount(min_resources[utils.RESOURCE_CPU])
        container_ids = {name: utils.ContainerId(namespace, workload, name) for name in container_histories}
        if self.config.max_workers > 1 and len(container_histories) > 1:
            with ThreadPoolExecutor(max_workers=min(self.config.max_workers, len(container_histories))) as executor:
                futures = {name: executor.submit(self._estimate_container_resources_safe, estimators,
                                                 container_ids[name], history, core_min)
                           for name, history in container_histories.items()}
                results = {name: future.result() for name, future in futures.items()}
        else:
            results = {name: self._estimate_container_resources_safe(estimators, container_ids[name], history,
                                                                     core_min)
                       for name, history in container_histories.items()}
        for name, result in results.items():
            if result is not None:
                recommendation[name] = result
        stale = self.state_store.prune(namespace, workload, set(container_histories.keys()))
        for container_id in stale:
            utils.logging_or_print(f'{str(self)}: controller state of {container_id} discarded, no longer tracked.',
                                   enable_logging=self.enable_logging, level=logging.INFO)
        return recommendation

    def _estimate_container_resources_safe(self, estimators: tuple, container_id: utils.ContainerId,
                                           history: usage_history.ContainerUsageHistory, core_min: float) \
            -> utils.RecommendedContainerResources | None:
        try:
            return self._estimate_container_resources(estimators, container_id, history, core_min)
        except Exception as e:
            utils.logging_or_print(f'{str(self)}: an error occurred while recommending resources for {container_id}: '
                                   f'{e}, fall back to estimators.',
                                   enable_logging=self.enable_logging, level=logging.ERROR)
        try:
            return self._estimate_with_estimators(estimators, history)
        except Exception as e:
            utils.logging_or_print(f'{str(self)}: no recommendation for {container_id}: {e}.',
                                   enable_logging=self.enable_logging, level=logging.ERROR)
            return None

    @classmethod
    def _estimate_with_estimators(cls, estimators: tuple, history: usage_history.ContainerUsageHistory) \
            -> utils.RecommendedContainerResources:
        target_estimator, lower_bound_estimator, upper_bound_estimator = estimators
        return utils.RecommendedContainerResources(
            target=target_estimator.get_resource_estimation(history),
            lower_bound=lower_bound_estimator.get_resource_estimation(history),
            upper_bound=upper_bound_estimator.get_resource_estimation(history),
            mode=utils.RecommendationMode.ESTIMATOR_ONLY)

    def _estimate_container_resources(self, estimators: tuple, container_id: utils.ContainerId,
                                      history: usage_history.ContainerUsageHistory, core_min: float) \
            -> utils.RecommendedContainerResources:
        estimated = self._estimate_with_estimators(estimators, history)
        if self.select_mode(container_id) == utils.RecommendationMode.ESTIMATOR_ONLY:
            return estimated
        telemetry = self._fetch_telemetry(container_id)
        if telemetry is None:
            return estimated
        rt, request_count = telemetry
        controller_step = self.controller.evaluate(self.state_store, container_id, rt, request_count, core_min)
        if controller_step is None:  # baseline only or non-finite reading
            return estimated
        target = {utils.RESOURCE_CPU: utils.cpu_amount_from_cores(controller_step.approx_core),
                  utils.RESOURCE_MEMORY: estimated.target[utils.RESOURCE_MEMORY]}
        utils.logging_or_print(
            f'{str(self)}: cpu target of {container_id} overridden by the controller: '
            f'{estimated.target[utils.RESOURCE_CPU]} mcore -> {target[utils.RESOURCE_CPU]} mcore.',
            enable_logging=self.enable_logging, level=logging.INFO)
        return utils.RecommendedContainerResources(
            target=target, lower_bound=estimated.lower_bound, upper_bound=estimated.upper_bound,
            mode=utils.RecommendationMode.CONTROLLER_OVERRIDE)

    def _fetch_telemetry(self, container_id: utils.ContainerId) -> tuple | None:
        """
        both queries share one deadline of metric_timeout seconds
        :return: (mean response time (unit: ms), request counter), None if unavailable for this tick
        """
        namespace = self.config.metric_namespace if self.config.metric_namespace else container_id.namespace
        selector = base.WorkloadSelector(namespace=namespace, label_selector=self.config.metric_label_selector)
        deadline = time.monotonic() + self.config.metric_timeout
        try:
            rt = self.metric_source.query_value(selector, self.config.response_time_metric,
                                                timeout=self.config.metric_timeout)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise base.MetricSourceError(f'deadline of {self.config.metric_timeout} s exceeded before querying '
                                             f'{self.config.request_count_metric}')
            request_count = self.metric_source.query_value(selector, self.config.request_count_metric,
                                                           timeout=remaining)
        except Exception as e:
            utils.logging_or_print(f'{str(self)}: telemetry of {container_id} unavailable: {e}, '
                                   f'fall back to estimators for this tick.',
                                   enable_logging=self.enable_logging, level=logging.WARNING)
            return None
        return rt, request_count


class WorkloadTarget:
    # a workload whose containers are tracked by the recommender service
    def __init__(self, namespace: str, workload: str, containers: list[str]):
        if not isinstance(containers, list) or len(containers) == 0:
            raise ValueError(f'containers must be a non-empty list, received {containers} instead')
        self.namespace = namespace
        self.workload = workload
        self.containers = containers

    def __str__(self) -> str:
        return f'{self.namespace}/{self.workload} ({", ".join(self.containers)})'


class RecommenderService:
    """
    periodically recommends resources for the tracked workloads, histories are provided by
    history_provider(namespace, workload, containers) -> {container: ContainerUsageHistory}
    """

    def __init__(self, workloads: list[WorkloadTarget], history_provider, recommender: PodResourceRecommender,
                 recommend_interval: int = utils.RECOMMEND_INTERVAL, buffer_size: int = utils.BUFFER_SIZE,
                 enable_logging: bool = True):
        self.workloads = workloads
        self.history_provider = history_provider
        self.recommender = recommender
        utils.validate_interval(recommend_interval, 'recommend_interval')
        self.recommend_interval = recommend_interval  # unit: s
        utils.validate_interval(buffer_size, 'buffer_size')
        self.buffer_size = buffer_size
        self.enable_logging = enable_logging
        # record latest n RecommendationForWorkload per workload (n=buffer_size)
        self._recommendation_buffer: dict[tuple, list[utils.RecommendationForWorkload]] = {}
        self._scheduler = BackgroundScheduler()
        self.recommend_job = self._scheduler.add_job(
            self.recommend_once, trigger='interval', seconds=self.recommend_interval)

    def __str__(self) -> str:
        return f'Recommender service ({len(self.workloads)} workloads)'

    # get methods
    def get_latest_recommendation(self, namespace: str, workload: str) -> utils.RecommendationForWorkload | None:
        buffer = self._recommendation_buffer.get((namespace, workload), [])
        if len(buffer) > 0:
            return buffer[-1]

    def recommend_once(self) -> list[utils.RecommendationForWorkload]:
        start = time.time()
        results = []
        for target in self.workloads:
            try:
                histories = self.history_provider(target.namespace, target.workload, target.containers)
                recommendations = self.recommender.get_recommended_pod_resources(
                    histories, namespace=target.namespace, workload=target.workload)
            except Exception as e:
                utils.logging_or_print(f'{str(self)}: recommendation for {str(target)} failed: {e}.',
                                       enable_logging=self.enable_logging, level=logging.ERROR)
                continue
            rfw = utils.RecommendationForWorkload(namespace=target.namespace, workload=target.workload,
                                                  recommendations=recommendations, timestamp=int(start))
            buffer = self._recommendation_buffer.setdefault((target.namespace, target.workload), [])
            buffer.append(rfw)
            if len(buffer) > self.buffer_size:
                del buffer[:len(buffer) - self.buffer_size]
            results.append(rfw)
            utils.logging_or_print(f'{str(self)}: {str(rfw)}', enable_logging=self.enable_logging, level=logging.INFO)
        utils.logging_or_print(f'{str(self)}: finished recommending, using {time.time() - start:.3f} s.',
                               enable_logging=self.enable_logging, level=logging.INFO)
        return results

    def update_recommend_interval(self, new_interval: int):
        if not isinstance(new_interval, int) or new_interval <= 0:
            utils.logging_or_print(
                f'{str(self)}: invalid recommend interval, positive integer required, received {new_interval} '
                f'instead.', enable_logging=self.enable_logging, level=logging.WARNING)
        elif new_interval != self.recommend_interval:
            old_interval = self.recommend_interval
            self.recommend_interval = new_interval
            self._scheduler.reschedule_job(self.recommend_job.id, trigger='interval', seconds=new_interval)
            utils.logging_or_print(
                f'{str(self)}: recommend interval is updated from {old_interval} s to {new_interval} s.',
                enable_logging=self.enable_logging, level=logging.INFO)

    def is_running(self) -> bool:
        return self._scheduler.running

    def start(self):
        if not self._scheduler.running:
            self._scheduler.start()
            if self._scheduler.running:
                utils.logging_or_print(
                    f'{str(self)} starts running.',
                    enable_logging=self.enable_logging, level=logging.INFO)
        else:
            utils.logging_or_print(f'{str(self)} has already been running.',
                                   enable_logging=self.enable_logging, level=logging.WARNING)

    def shutdown(self):
        if self._scheduler.running:
            self._scheduler.shutdown()
            utils.logging_or_print(f'{str(self)} has been shutdown.',
                                   enable_logging=self.enable_logging, level=logging.INFO)
        else:
            utils.logging_or_print(f'{str(self)} has already been shutdown.',
                                   enable_logging=self.enable_logging, level=logging.WARNING)
