import math
from podrec.history import usage_history
from podrec.utils import utils, config


class PercentileEstimator:
    """returns the configured percentiles of cpu and memory usage"""

    def __init__(self, cpu_percentile: float, memory_percentile: float):
        utils.validate_fraction(cpu_percentile, 'cpu_percentile')
        utils.validate_fraction(memory_percentile, 'memory_percentile')
        self.cpu_percentile = cpu_percentile
        self.memory_percentile = memory_percentile

    def __str__(self) -> str:
        return f'percentile (cpu: {self.cpu_percentile}, memory: {self.memory_percentile})'

    def get_resource_estimation(self, history: usage_history.ContainerUsageHistory) -> dict:
        return {utils.RESOURCE_CPU: history.percentile(utils.RESOURCE_CPU, self.cpu_percentile),
                utils.RESOURCE_MEMORY: history.percentile(utils.RESOURCE_MEMORY, self.memory_percentile)}


class EstimationStage:
    """one step of an estimator chain, maps an estimation to a new one"""

    def apply(self, resources: dict, history: usage_history.ContainerUsageHistory) -> dict:
        raise NotImplementedError('Implement in a child class.')


class MarginStage(EstimationStage):
    def __init__(self, margin_fraction: float):
        if type(margin_fraction) not in [int, float] or margin_fraction < 0:
            raise ValueError(f'margin_fraction must be a non-negative number, received {margin_fraction} instead')
        self.margin_fraction = margin_fraction

    def __str__(self) -> str:
        return f'margin ({self.margin_fraction})'

    def apply(self, resources: dict, history: usage_history.ContainerUsageHistory) -> dict:
        return {resource: utils.scale_resource(amount, 1.0 + self.margin_fraction)
                for resource, amount in resources.items()}


class ConfidenceMultiplierStage(EstimationStage):
    """
    scales the estimation by (1 + multiplier / history_length_in_days) ^ exponent,
    the factor converges to 1 as the history grows
    """

    def __init__(self, multiplier: float, exponent: float):
        if type(multiplier) not in [int, float] or multiplier < 0:
            raise ValueError(f'multiplier must be a non-negative number, received {multiplier} instead')
        self.multiplier = multiplier
        self.exponent = exponent

    def __str__(self) -> str:
        return f'confidence multiplier ({self.multiplier}, {self.exponent})'

    def get_factor(self, history_length_days: float) -> float:
        if history_length_days <= 0:
            if self.multiplier == 0 or self.exponent == 0:
                return 1.0
            return math.inf if self.exponent > 0 else 0.0
        return math.pow(1.0 + self.multiplier / history_length_days, self.exponent)

    def apply(self, resources: dict, history: usage_history.ContainerUsageHistory) -> dict:
        factor = self.get_factor(history.get_history_length_days())
        return {resource: utils.scale_resource(amount, factor) for resource, amount in resources.items()}


class MinResourcesStage(EstimationStage):
    """hard floor, only allowed as the last stage of a chain"""

    def __init__(self, min_resources: dict):
        utils.validate_resources(min_resources, 'min_resources')
        self.min_resources = dict(min_resources)

    def __str__(self) -> str:
        return f'min resources ({utils.resources_str(self.min_resources)})'

    def apply(self, resources: dict, history: usage_history.ContainerUsageHistory) -> dict:
        result = {}
        for resource, amount in resources.items():
            if resource in self.min_resources:
                amount = utils.resource_amount_max(amount, self.min_resources[resource])
            result[resource] = amount
        return result


class EstimatorChain:
    """
    a percentile estimator followed by an ordered list of stages
    """

    def __init__(self, base: PercentileEstimator, stages: list[EstimationStage] | None = None):
        self.base = base
        self.stages = tuple(stages) if stages is not None else ()
        for i, stage in enumerate(self.stages):
            if not isinstance(stage, EstimationStage):
                raise ValueError(f'stages must be EstimationStage, received {stage} ({type(stage)}) instead')
            if isinstance(stage, MinResourcesStage) and i != len(self.stages) - 1:
                raise ValueError(f'{str(stage)} must be the last stage, followed by {str(self.stages[i + 1])}')

    def __str__(self) -> str:
        return ' -> '.join([str(self.base)] + [str(stage) for stage in self.stages])

    def with_stage(self, stage: EstimationStage) -> 'EstimatorChain':
        return EstimatorChain(self.base, list(self.stages) + [stage])

    def with_margin(self, margin_fraction: float) -> 'EstimatorChain':
        return self.with_stage(MarginStage(margin_fraction))

    def with_confidence_multiplier(self, multiplier: float, exponent: float) -> 'EstimatorChain':
        return self.with_stage(ConfidenceMultiplierStage(multiplier, exponent))

    def with_min_resources(self, min_resources: dict) -> 'EstimatorChain':
        return self.with_stage(MinResourcesStage(min_resources))

    def get_resource_estimation(self, history: usage_history.ContainerUsageHistory) -> dict:
        resources = self.base.get_resource_estimation(history)
        for stage in self.stages:
            resources = stage.apply(resources, history)
        return resources


def create_estimators(estimator_config: config.EstimatorConfig) \
        -> (EstimatorChain, EstimatorChain, EstimatorChain):
    """
    build the target, lower bound and upper bound chains (without the per-container floor)

    The upper bound confidence multiplier makes the updater less eager to evict pods with short history in order to
    reclaim unused resources, with (1, +1) the upper bound is multiplied by (1 + 1/history-length-in-days):
    no history -> *INF, 12h -> *3, 24h -> *2, 1 week -> *1.14.
    The lower bound one makes it less eager to evict pods with short history in order to provision them with more
    resources, with (0.001, -2) the lower bound is multiplied by (1 + 0.001/history-length-in-days)^-2:
    no history -> *0, 5m -> *0.6, 30m -> *0.9, 60m -> *0.95.
    """
    target = EstimatorChain(PercentileEstimator(
        estimator_config.target_cpu_percentile, estimator_config.target_memory_percentile))
    lower_bound = EstimatorChain(PercentileEstimator(
        estimator_config.lower_bound_cpu_percentile, estimator_config.lower_bound_memory_percentile))
    upper_bound = EstimatorChain(PercentileEstimator(
        estimator_config.upper_bound_cpu_percentile, estimator_config.upper_bound_memory_percentile))
    target = target.with_margin(estimator_config.margin_fraction)
    lower_bound = lower_bound.with_margin(estimator_config.margin_fraction)
    upper_bound = upper_bound.with_margin(estimator_config.margin_fraction)
    upper_bound = upper_bound.with_confidence_multiplier(*estimator_config.upper_bound_confidence)
    lower_bound = lower_bound.with_confidence_multiplier(*estimator_config.lower_bound_confidence)
    return target, lower_bound, upper_bound


def pod_min_resources(estimator_config: config.EstimatorConfig, num_containers: int) -> dict:
    """per-container floor: the pod-level minimum divided evenly across the containers"""
    if num_containers <= 0:
        raise ValueError(f'num_containers must be positive, received {num_containers} instead')
    fraction = 1.0 / num_containers
    return {
        utils.RESOURCE_CPU: utils.scale_resource(
            utils.cpu_amount_from_cores(estimator_config.pod_min_cpu_millicores * 0.001), fraction),
        utils.RESOURCE_MEMORY: utils.scale_resource(
            utils.memory_amount_from_bytes(estimator_config.pod_min_memory_mb * 1024 * 1024), fraction)}
