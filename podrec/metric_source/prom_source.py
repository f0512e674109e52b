import logging
import requests
from podrec.metric_source import base
from podrec.utils import utils, prom_query

# templates are formatted with namespace, label_selector (may be empty) and metric_name
DEFAULT_QUERY_TEMPLATE = 'avg({metric_name}{{namespace=\'{namespace}\'{label_selector}}})'


class PrometheusMetricSource(base.MetricSource):
    """
    metric source reading instant vectors from prometheus
    """

    def __init__(self, prom_url: str = utils.PROM_URL, token: str = utils.AUTH_TOKEN,
                 query_templates: dict[str, str] | None = None, timeout: int = utils.METRIC_TIMEOUT,
                 enable_logging: bool = True):
        super().__init__(timeout=timeout, enable_logging=enable_logging)
        self.prom_url = prom_url
        self.token = token
        self.query_templates = query_templates if query_templates is not None else {}

    def __str__(self) -> str:
        return f'Prometheus metric source ({self.prom_url})'

    @classmethod
    def convert_label_selector(cls, label_selector: str | None) -> str:
        """convert a kubernetes equality-based label selector (a=b,c!=d) into promql label matchers"""
        if not label_selector:
            return ''
        matchers = []
        for term in label_selector.split(','):
            term = term.strip()
            if '!=' in term:
                key, value = term.split('!=', 1)
                matchers.append(f'{key.strip()}!=\'{value.strip()}\'')
            elif '=' in term:
                key, value = term.split('=', 1)
                matchers.append(f'{key.strip()}=\'{value.strip().lstrip("=")}\'')
            else:
                raise ValueError(f'unsupported label selector term: {term}')
        return ', ' + ', '.join(matchers)

    def build_query(self, selector: base.WorkloadSelector, metric_name: str) -> str:
        template = self.query_templates.get(metric_name, DEFAULT_QUERY_TEMPLATE)
        return template.format(metric_name=metric_name, namespace=selector.namespace,
                               label_selector=self.convert_label_selector(selector.label_selector))

    def query(self, selector: base.WorkloadSelector, metric_name: str,
              timeout: float | None = None) -> list[base.MetricValue]:
        if timeout is None:
            timeout = self.timeout
        promql = self.build_query(selector, metric_name)
        try:
            data_raw = prom_query.get_prometheus_data(query=promql, url=self.prom_url, token=self.token,
                                                      range_query=False, timeout=timeout)
        except (prom_query.PrometheusQueryError, requests.RequestException, KeyError, ValueError) as e:
            utils.logging_or_print(f'{str(self)}: an error occurred while querying {metric_name} for '
                                   f'{str(selector)}: {e}.', enable_logging=self.enable_logging, level=logging.ERROR)
            raise base.MetricSourceError(f'{metric_name}: {e}') from e
        metric_values = []
        if not prom_query.missing_data(data_raw):
            for result in data_raw:
                timestamp, value = result['value']
                metric_values.append(base.MetricValue(
                    described_object=result.get('metric', {}), metric_name=metric_name,
                    timestamp=str(timestamp), value=str(value)))
        return metric_values
