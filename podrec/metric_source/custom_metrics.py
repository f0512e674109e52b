import logging
import urllib3
from kubernetes import client
from kubernetes.client import ApiException
from podrec.metric_source import base
from podrec.utils import utils

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

CUSTOM_METRICS_PATH = '/apis/custom.metrics.k8s.io/v1beta1'


class CustomMetricsSource(base.MetricSource):
    """
    metric source reading MetricValueList objects from the custom metrics API of kube-apiserver
    """

    def __init__(self, apiserver_url: str = utils.APISERVER_URL, api_token: str = utils.AUTH_TOKEN,
                 verify_ssl: bool = False, timeout: int = utils.METRIC_TIMEOUT, enable_logging: bool = True):
        super().__init__(timeout=timeout, enable_logging=enable_logging)
        self.apiserver_url = apiserver_url
        self.api_token = api_token
        self.config = client.Configuration(host=apiserver_url)
        self.config.api_key['authorization'] = self.api_token
        self.config.api_key_prefix['authorization'] = 'Bearer'
        self.config.verify_ssl = verify_ssl

    def __str__(self) -> str:
        return f'Custom metrics source ({self.apiserver_url})'

    @classmethod
    def resource_path(cls, selector: base.WorkloadSelector, metric_name: str) -> str:
        return (f'{CUSTOM_METRICS_PATH}/namespaces/{selector.namespace}/{selector.resource}/{selector.name}/'
                f'{metric_name}')

    @classmethod
    def parse_metric_value_list(cls, data: dict, metric_name: str) -> list[base.MetricValue]:
        """
        MetricValueList example:
        {
            "kind": "MetricValueList",
            "apiVersion": "custom.metrics.k8s.io/v1beta1",
            "metadata": {"selfLink": "/apis/custom.metrics.k8s.io/v1beta1/namespaces/web/pods/*/response_time"},
            "items": [
                {
                    "describedObject": {"kind": "Pod", "namespace": "web", "name": "front-0", "apiVersion": "/v1"},
                    "metricName": "response_time",
                    "timestamp": "2025-01-01T00:00:00Z",
                    "value": "120m"
                }
            ]
        }
        """
        if not isinstance(data, dict):
            raise base.MetricSourceError(f'unexpected {metric_name} response: {data}')
        metric_values = []
        for item in data.get('items') or []:
            metric_values.append(base.MetricValue(
                described_object=item.get('describedObject', {}), metric_name=item.get('metricName', metric_name),
                timestamp=item.get('timestamp', ''), value=str(item.get('value', ''))))
        return metric_values

    def query(self, selector: base.WorkloadSelector, metric_name: str,
              timeout: float | None = None) -> list[base.MetricValue]:
        if timeout is None:
            timeout = self.timeout
        query_params = []
        if selector.label_selector:
            query_params.append(('labelSelector', selector.label_selector))
        with client.ApiClient(self.config) as api_client:
            try:
                data = api_client.call_api(
                    self.resource_path(selector, metric_name), 'GET', query_params=query_params,
                    header_params={'Accept': 'application/json'}, response_type='object',
                    auth_settings=['BearerToken'], _return_http_data_only=True, _preload_content=True,
                    _request_timeout=timeout)
            except ApiException as e:
                utils.logging_or_print(f'{str(self)}: failed to get {metric_name} for {str(selector)}: {e.reason}.',
                                       enable_logging=self.enable_logging, level=logging.ERROR)
                raise base.MetricSourceError(f'{metric_name}: {e.status} {e.reason}') from e
            except (urllib3.exceptions.HTTPError, OSError) as e:
                utils.logging_or_print(f'{str(self)}: an error occurred while querying {metric_name} for '
                                       f'{str(selector)}: {e}.',
                                       enable_logging=self.enable_logging, level=logging.ERROR)
                raise base.MetricSourceError(f'{metric_name}: {e}') from e
        return self.parse_metric_value_list(data, metric_name)
