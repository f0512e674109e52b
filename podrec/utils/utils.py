import enum
import logging
import math

# resource kinds
RESOURCE_CPU = 'cpu'
RESOURCE_MEMORY = 'memory'
RESOURCE_KINDS = [RESOURCE_CPU, RESOURCE_MEMORY]
MAX_RESOURCE_AMOUNT = 2 ** 63 - 1
# cluster access, replace with your config
PROM_URL = 'http://127.0.0.1:9090'
APISERVER_URL = 'https://127.0.0.1:6443'
# token to authenticate Prometheus and custom metrics API requests, generate it and fill in
AUTH_TOKEN = ''
# estimator params
MARGIN_FRACTION = 0.15  # fraction of usage added as the safety margin to the recommended request
POD_MIN_CPU_MILLICORES = 25.0  # minimum CPU recommendation for a pod (unit: 10^(-3)core)
POD_MIN_MEMORY_MB = 250.0  # minimum memory recommendation for a pod (unit: 2^20B)
TARGET_CPU_PERCENTILE = 0.9
LOWER_BOUND_CPU_PERCENTILE = 0.5
UPPER_BOUND_CPU_PERCENTILE = 0.95
TARGET_MEMORY_PERCENTILE = 0.9
LOWER_BOUND_MEMORY_PERCENTILE = 0.5
UPPER_BOUND_MEMORY_PERCENTILE = 0.95
# (multiplier, exponent): (1 + multiplier / history_length_in_days) ^ exponent
UPPER_BOUND_CONFIDENCE = (1.0, 1.0)
LOWER_BOUND_CONFIDENCE = (0.001, -2.0)
# controller params
CONTROL_SLA = 1000.0  # response time set point (unit: ms)
CONTROL_A = 0.5  # in (0, 1), the closer to 1 the more conservative the control
CONTROL_P_NOM = 0.8  # nominal pole
CONTROL_A1_NOM = 0.1963
CONTROL_A2_NOM = 0.002
CONTROL_A3_NOM = 0.5658
CONTROL_CORE_MAX = 1.0  # max cores to afford for the scaling (unit: core)
MARGIN_ERROR = 1e-9  # if |a-b| <= MARGIN_ERROR, consider as a=b
# telemetry
RESPONSE_TIME_METRIC = 'response_time'  # mean response time (unit: ms)
REQUEST_COUNT_METRIC = 'response_count'  # cumulative request counter
METRIC_TIMEOUT = 10  # unit: s
# recommender params
RECOMMEND_INTERVAL = 60  # unit: s
HISTORY_WINDOW = 8 * 24 * 3600  # unit: s
HISTORY_STEP = 60  # unit: s
MAX_POINTS_PER_QUERY = 11000  # prometheus rejects range queries resolving to more points
BUFFER_SIZE = 60


# util functions
def validate_interval(interval, name: str):
    if not isinstance(interval, int) or interval <= 0:
        raise ValueError(f'{name} must be a positive integer, received {interval} ({type(interval)}) instead')


def validate_resource(resource):
    if not isinstance(resource, str) or resource not in RESOURCE_KINDS:
        raise ValueError(f'resource must be one of {list(RESOURCE_KINDS)}, received {resource} instead')


def validate_fraction(value, name: str, low: float = 0.0, high: float = 1.0):
    if type(value) not in [int, float] or not low <= value <= high:
        raise ValueError(f'{name} must be a number in [{low}, {high}], received {value} ({type(value)}) instead')


def logging_or_print(message: str, enable_logging: bool = True, level: int = logging.INFO):
    if enable_logging:
        if level not in [logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR]:
            level = logging.INFO
        if level == logging.DEBUG:
            logging.debug(message)
        elif level == logging.INFO:
            logging.info(message)
        elif level == logging.WARNING:
            logging.warning(message)
        else:  # error
            logging.error(message)
    else:
        print(message)


# resource amounts, cpu unit: 10^(-3)core, memory unit: B
def resource_amount_from_float(amount: float) -> int:
    if math.isnan(amount) or amount < 0:
        return 0
    if amount >= MAX_RESOURCE_AMOUNT:
        return MAX_RESOURCE_AMOUNT
    return int(round(amount))


def cpu_amount_from_cores(cores: float) -> int:
    return resource_amount_from_float(cores * 1000.0)


def cores_from_cpu_amount(cpu_amount: int) -> float:
    return cpu_amount / 1000.0


def memory_amount_from_bytes(num_bytes: float) -> int:
    return resource_amount_from_float(num_bytes)


def bytes_from_memory_amount(memory_amount: int) -> float:
    return float(memory_amount)


def scale_resource(amount: int, factor: float) -> int:
    if amount == 0:
        return 0
    return resource_amount_from_float(amount * factor)


def resource_amount_max(amount_1: int, amount_2: int) -> int:
    return amount_1 if amount_1 > amount_2 else amount_2


def validate_resources(resources: dict, name: str = 'resources'):
    if not isinstance(resources, dict):
        raise ValueError(f'{name} must be a dict, received {resources} ({type(resources)}) instead')
    for resource in resources:
        validate_resource(resource)


def resources_str(resources: dict) -> str:
    return (f'cpu: {resources.get(RESOURCE_CPU, 0)} mcore, '
            f'memory: {resources.get(RESOURCE_MEMORY, 0) / 2 ** 20:.1f} MiB')


# types and classes
class ContainerId:
    """identity of a tracked container: namespace + workload + container name"""

    def __init__(self, namespace: str, workload: str, container: str):
        if not isinstance(namespace, str):
            raise ValueError(f'namespace must be str, received {namespace} ({type(namespace)}) instead')
        if not isinstance(workload, str):
            raise ValueError(f'workload must be str, received {workload} ({type(workload)}) instead')
        if not isinstance(container, str) or container == '':
            raise ValueError(f'container must be a non-empty str, received {container} ({type(container)}) instead')
        self.namespace = namespace
        self.workload = workload
        self.container = container

    def key(self) -> tuple:
        return self.namespace, self.workload, self.container

    def __eq__(self, other):
        if isinstance(other, ContainerId):
            return self.key() == other.key()
        return NotImplemented

    def __hash__(self):
        return hash(self.key())

    def __str__(self) -> str:
        return f'{self.namespace}/{self.workload}/{self.container}'

    def __repr__(self) -> str:
        return f'ContainerId({self.namespace!r}, {self.workload!r}, {self.container!r})'


class RecommendationMode(enum.Enum):
    ESTIMATOR_ONLY = 'estimator-only'
    CONTROLLER_OVERRIDE = 'controller-override'


class RecommendedContainerResources:
    # recommendation for one container
    def __init__(self, target: dict, lower_bound: dict, upper_bound: dict,
                 mode: RecommendationMode = RecommendationMode.ESTIMATOR_ONLY):
        self.target = target  # recommended optimal amount of resources
        self.lower_bound = lower_bound  # recommended minimum amount of resources
        self.upper_bound = upper_bound  # recommended maximum amount of resources
        self.mode = mode

    def to_dict(self) -> dict:
        return {'target': dict(self.target), 'lower_bound': dict(self.lower_bound),
                'upper_bound': dict(self.upper_bound), 'mode': self.mode.value}

    def __str__(self) -> str:
        return (f'target: ({resources_str(self.target)}), lower bound: ({resources_str(self.lower_bound)}), '
                f'upper bound: ({resources_str(self.upper_bound)}), mode: {self.mode.value}')


class RecommendationForWorkload:
    # recommendation for all containers of one workload produced in one pass
    def __init__(self, namespace: str, workload: str, recommendations: dict[str, RecommendedContainerResources],
                 timestamp: int = 0):
        self.namespace = namespace
        self.workload = workload
        self.timestamp = timestamp  # unix timestamp (unit: s)
        self.recommendations = recommendations

    def __str__(self) -> str:
        str_ = f'timestamp: {self.timestamp}, workload: {self.namespace}/{self.workload}'
        for key, value in self.recommendations.items():
            str_ += f', {key}: ({str(value)})'
        return str_
