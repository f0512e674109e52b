from podrec.utils import utils


class EstimatorConfig:
    """percentiles, margin, confidence multipliers and pod-level floor of the three estimator chains"""

    def __init__(self, target_cpu_percentile: float = utils.TARGET_CPU_PERCENTILE,
                 lower_bound_cpu_percentile: float = utils.LOWER_BOUND_CPU_PERCENTILE,
                 upper_bound_cpu_percentile: float = utils.UPPER_BOUND_CPU_PERCENTILE,
                 target_memory_percentile: float = utils.TARGET_MEMORY_PERCENTILE,
                 lower_bound_memory_percentile: float = utils.LOWER_BOUND_MEMORY_PERCENTILE,
                 upper_bound_memory_percentile: float = utils.UPPER_BOUND_MEMORY_PERCENTILE,
                 margin_fraction: float = utils.MARGIN_FRACTION,
                 upper_bound_confidence: tuple = utils.UPPER_BOUND_CONFIDENCE,
                 lower_bound_confidence: tuple = utils.LOWER_BOUND_CONFIDENCE,
                 pod_min_cpu_millicores: float = utils.POD_MIN_CPU_MILLICORES,
                 pod_min_memory_mb: float = utils.POD_MIN_MEMORY_MB):
        for name, value in [('target_cpu_percentile', target_cpu_percentile),
                            ('lower_bound_cpu_percentile', lower_bound_cpu_percentile),
                            ('upper_bound_cpu_percentile', upper_bound_cpu_percentile),
                            ('target_memory_percentile', target_memory_percentile),
                            ('lower_bound_memory_percentile', lower_bound_memory_percentile),
                            ('upper_bound_memory_percentile', upper_bound_memory_percentile)]:
            utils.validate_fraction(value, name)
        self.target_cpu_percentile = target_cpu_percentile
        self.lower_bound_cpu_percentile = lower_bound_cpu_percentile
        self.upper_bound_cpu_percentile = upper_bound_cpu_percentile
        self.target_memory_percentile = target_memory_percentile
        self.lower_bound_memory_percentile = lower_bound_memory_percentile
        self.upper_bound_memory_percentile = upper_bound_memory_percentile
        if type(margin_fraction) not in [int, float] or margin_fraction < 0:
            raise ValueError(f'margin_fraction must be a non-negative number, received {margin_fraction} '
                             f'({type(margin_fraction)}) instead')
        self.margin_fraction = margin_fraction
        for name, value in [('upper_bound_confidence', upper_bound_confidence),
                            ('lower_bound_confidence', lower_bound_confidence)]:
            if not isinstance(value, tuple) or len(value) != 2 or value[0] < 0:
                raise ValueError(f'{name} must be a (multiplier >= 0, exponent) tuple, received {value} instead')
        self.upper_bound_confidence = upper_bound_confidence
        self.lower_bound_confidence = lower_bound_confidence
        if type(pod_min_cpu_millicores) not in [int, float] or pod_min_cpu_millicores < 0:
            raise ValueError(f'pod_min_cpu_millicores must be a non-negative number, received '
                             f'{pod_min_cpu_millicores} instead')
        self.pod_min_cpu_millicores = pod_min_cpu_millicores
        if type(pod_min_memory_mb) not in [int, float] or pod_min_memory_mb < 0:
            raise ValueError(f'pod_min_memory_mb must be a non-negative number, received {pod_min_memory_mb} instead')
        self.pod_min_memory_mb = pod_min_memory_mb

    def __str__(self) -> str:
        return (f'percentiles (target/lower/upper): cpu {self.target_cpu_percentile}/'
                f'{self.lower_bound_cpu_percentile}/{self.upper_bound_cpu_percentile}, memory '
                f'{self.target_memory_percentile}/{self.lower_bound_memory_percentile}/'
                f'{self.upper_bound_memory_percentile}, margin: {self.margin_fraction}, pod min: '
                f'{self.pod_min_cpu_millicores} mcore, {self.pod_min_memory_mb} MB')


class ControllerConfig:
    """parameters of the response time feedback controller (core_min is the per-container CPU floor)"""

    def __init__(self, sla_ms: float = utils.CONTROL_SLA, a: float = utils.CONTROL_A,
                 p_nom: float = utils.CONTROL_P_NOM, a1: float = utils.CONTROL_A1_NOM,
                 a2: float = utils.CONTROL_A2_NOM, a3: float = utils.CONTROL_A3_NOM,
                 core_max: float = utils.CONTROL_CORE_MAX, singular_epsilon: float = utils.MARGIN_ERROR):
        if type(sla_ms) not in [int, float] or sla_ms <= 0:
            raise ValueError(f'sla_ms must be a positive number, received {sla_ms} ({type(sla_ms)}) instead')
        self.sla_ms = sla_ms
        if type(a) not in [int, float] or not 0 < a < 1:
            raise ValueError(f'a must be a number in (0, 1), received {a} ({type(a)}) instead')
        self.a = a
        if type(p_nom) not in [int, float] or p_nom == 1:
            raise ValueError(f'p_nom must be a number other than 1, received {p_nom} ({type(p_nom)}) instead')
        self.p_nom = p_nom
        if a3 == 0:
            raise ValueError('a3 must not be 0')
        self.a1 = a1
        self.a2 = a2
        self.a3 = a3
        if type(core_max) not in [int, float] or core_max <= 0:
            raise ValueError(f'core_max must be a positive number, received {core_max} ({type(core_max)}) instead')
        self.core_max = core_max  # unit: core
        if singular_epsilon < 0:
            raise ValueError(f'singular_epsilon must be non-negative, received {singular_epsilon} instead')
        self.singular_epsilon = singular_epsilon

    def __str__(self) -> str:
        return (f'SLA: {self.sla_ms} ms, A: {self.a}, P_nom: {self.p_nom}, a1: {self.a1}, a2: {self.a2}, '
                f'a3: {self.a3}, core max: {self.core_max}')


class RecommenderConfig:
    """orchestration config: estimators, controller, override selection and telemetry"""

    def __init__(self, estimator: EstimatorConfig | None = None, controller: ControllerConfig | None = None,
                 override_containers: set | None = None,
                 response_time_metric: str = utils.RESPONSE_TIME_METRIC,
                 request_count_metric: str = utils.REQUEST_COUNT_METRIC,
                 metric_namespace: str | None = None, metric_label_selector: str | None = None,
                 metric_timeout: int = utils.METRIC_TIMEOUT, max_workers: int = 1, enable_logging: bool = True):
        self.estimator = estimator if estimator is not None else EstimatorConfig()
        self.controller = controller if controller is not None else ControllerConfig()
        self.override_containers = set()
        # identities whose CPU target is driven by the controller
        for container_id in (override_containers or set()):
            if not isinstance(container_id, utils.ContainerId):
                raise ValueError(f'override_containers must hold ContainerId, received {container_id} '
                                 f'({type(container_id)}) instead')
            self.override_containers.add(container_id)
        for name, value in [('response_time_metric', response_time_metric),
                            ('request_count_metric', request_count_metric)]:
            if not isinstance(value, str) or value == '':
                raise ValueError(f'{name} must be a non-empty str, received {value} ({type(value)}) instead')
        self.response_time_metric = response_time_metric
        self.request_count_metric = request_count_metric
        self.metric_namespace = metric_namespace  # None: namespace of the container
        self.metric_label_selector = metric_label_selector
        utils.validate_interval(metric_timeout, 'metric_timeout')
        self.metric_timeout = metric_timeout  # deadline of the telemetry fetch of one container, unit: s
        utils.validate_interval(max_workers, 'max_workers')
        self.max_workers = max_workers
        self.enable_logging = enable_logging
