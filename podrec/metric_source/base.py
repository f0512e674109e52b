import logging
from podrec.utils import utils


class MetricSourceError(Exception):
    """metric unavailable for this tick (transport error, timeout, empty result)"""
    pass


def parse_value(value: str) -> float:
    """
    parse a metric value string, a trailing 'm' means 10^(-3),
    unparsable or negative values are read as 0.0
    """
    if not isinstance(value, str) or value == '':
        return 0.0
    multiplier = 1.0
    if value[-1] == 'm':
        multiplier = 0.001
        value = value[:-1]
    try:
        f_value = float(value)
    except ValueError:
        return 0.0
    if f_value != f_value or f_value < 0:  # nan or negative
        return 0.0
    return f_value * multiplier


class WorkloadSelector:
    """objects whose metrics are queried, e.g. namespaces/<namespace>/pods/*"""

    def __init__(self, namespace: str, resource: str = 'pods', name: str = '*', label_selector: str | None = None):
        if not isinstance(namespace, str) or namespace == '':
            raise ValueError(f'namespace must be a non-empty str, received {namespace} ({type(namespace)}) instead')
        self.namespace = namespace
        self.resource = resource
        self.name = name
        self.label_selector = label_selector

    def __str__(self) -> str:
        str_ = f'namespaces/{self.namespace}/{self.resource}/{self.name}'
        if self.label_selector:
            str_ += f' ({self.label_selector})'
        return str_


class MetricValue:
    # one item of a metric value list
    def __init__(self, described_object: dict, metric_name: str, timestamp: str, value: str):
        self.described_object = described_object  # kind, namespace, name, apiVersion
        self.metric_name = metric_name
        self.timestamp = timestamp
        self.value = value  # raw value string, e.g. '12m'

    def get_value(self) -> float:
        return parse_value(self.value)

    def __str__(self) -> str:
        return (f'{self.metric_name} of {self.described_object.get("kind", "")}/'
                f'{self.described_object.get("name", "")} at {self.timestamp}: {self.value}')


class MetricSource:
    """
    base class for live telemetry sources
    """

    def __init__(self, timeout: int = utils.METRIC_TIMEOUT, enable_logging: bool = True):
        utils.validate_interval(timeout, 'timeout')
        self.timeout = timeout  # deadline of one query, unit: s
        self.enable_logging = enable_logging

    def query(self, selector: WorkloadSelector, metric_name: str, timeout: float | None = None) -> list[MetricValue]:
        """
        :param timeout: deadline of this query (unit: s), self.timeout if None
        :return: ordered metric values
        :raise MetricSourceError: metric unavailable
        """
        raise NotImplementedError('Implement in a child class.')

    def query_value(self, selector: WorkloadSelector, metric_name: str, timeout: float | None = None) -> float:
        """value of the first item of the metric value list"""
        metric_values = self.query(selector, metric_name, timeout=timeout)
        if len(metric_values) == 0:
            raise MetricSourceError(f'{str(self)}: empty {metric_name} data for {str(selector)}')
        value = metric_values[0].get_value()
        utils.logging_or_print(f'{str(self)}: {str(metric_values[0])} -> {value}.',
                               enable_logging=self.enable_logging, level=logging.DEBUG)
        return value
