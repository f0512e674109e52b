import numpy as np
from podrec.utils import utils

SECONDS_PER_DAY = 24 * 3600
SAMPLES_PER_DAY = 60 * 24  # one sample per minute counts as one minute of history


class ContainerUsageHistory:
    """
    read-only usage history of one container, queried by percentile
    """

    def percentile(self, resource: str, p: float) -> int:
        """
        :param resource: 'cpu' or 'memory'
        :param p: percentile in [0, 1]
        :return: resource amount (cpu unit: 10^(-3)core, memory unit: B)
        """
        raise NotImplementedError('Implement in a child class.')

    def get_history_length_days(self) -> float:
        """effective history length used by confidence multipliers, unit: day"""
        raise NotImplementedError('Implement in a child class.')


class SampleUsageHistory(ContainerUsageHistory):
    """
    usage history backed by raw samples, cpu unit: 10^(-3)core, memory unit: B
    """

    def __init__(self, cpu_samples: list | None = None, memory_samples: list | None = None,
                 first_sample_timestamp: int = 0, last_sample_timestamp: int = 0, total_samples: int | None = None):
        self._samples = {utils.RESOURCE_CPU: np.array(cpu_samples if cpu_samples is not None else [], dtype=float),
                         utils.RESOURCE_MEMORY: np.array(memory_samples if memory_samples is not None else [],
                                                         dtype=float)}
        if last_sample_timestamp < first_sample_timestamp:
            raise ValueError(f'last_sample_timestamp ({last_sample_timestamp}) must not be earlier than '
                             f'first_sample_timestamp ({first_sample_timestamp})')
        self.first_sample_timestamp = first_sample_timestamp  # unix timestamp (unit: s)
        self.last_sample_timestamp = last_sample_timestamp
        if total_samples is None:
            total_samples = max(len(self._samples[utils.RESOURCE_CPU]), len(self._samples[utils.RESOURCE_MEMORY]))
        self.total_samples = max(0, total_samples)

    def __str__(self) -> str:
        return (f'Sample usage history ({len(self._samples[utils.RESOURCE_CPU])} cpu samples, '
                f'{len(self._samples[utils.RESOURCE_MEMORY])} memory samples, '
                f'{self.get_history_length_days():.3f} days)')

    def is_empty(self) -> bool:
        return self.total_samples == 0

    def percentile(self, resource: str, p: float) -> int:
        utils.validate_resource(resource)
        utils.validate_fraction(p, 'p')
        samples = self._samples[resource]
        if len(samples) == 0:
            return 0
        return utils.resource_amount_from_float(float(np.percentile(samples, p * 100)))

    def get_history_length_days(self) -> float:
        lifespan_days = (self.last_sample_timestamp - self.first_sample_timestamp) / SECONDS_PER_DAY
        samples_days = self.total_samples / SAMPLES_PER_DAY
        return min(lifespan_days, samples_days)

    def add_sample(self, resource: str, value: float, timestamp: int):
        utils.validate_resource(resource)
        self._samples[resource] = np.append(self._samples[resource], max(0.0, value))
        if self.total_samples == 0:
            self.first_sample_timestamp = timestamp
            self.last_sample_timestamp = timestamp
        else:
            self.first_sample_timestamp = min(self.first_sample_timestamp, timestamp)
            self.last_sample_timestamp = max(self.last_sample_timestamp, timestamp)
        self.total_samples = max(len(self._samples[utils.RESOURCE_CPU]), len(self._samples[utils.RESOURCE_MEMORY]))
