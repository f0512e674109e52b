import logging
import time
from podrec.history import usage_history
from podrec.utils import utils, prom_query


class HistoryFetcher:
    """
    history fetcher for building container usage histories from prometheus range queries
    """

    def __init__(self, prom_url: str = utils.PROM_URL, token: str = utils.AUTH_TOKEN,
                 history_window: int = utils.HISTORY_WINDOW, step: int = utils.HISTORY_STEP, timeout: int = 10,
                 enable_logging: bool = True):
        self.prom_url = prom_url
        self.token = token
        utils.validate_interval(history_window, 'history_window')
        self._history_window = history_window  # unit: s
        utils.validate_interval(step, 'step')
        self._step = step  # unit: s
        utils.validate_interval(timeout, 'timeout')
        self.timeout = timeout
        self.enable_logging = enable_logging

    def __str__(self) -> str:
        return f'History fetcher (prometheus: {self.prom_url}, window: {self._history_window} s, step: {self._step} s)'

    def _query_points(self, promql: str, data_name: str, ts_now: int, ts_last: int, max_retries: int = 3) -> list:
        """range query over [ts_last, ts_now], split into chunks of at most MAX_POINTS_PER_QUERY points"""
        data_points = []
        chunk_start = ts_last
        while chunk_start <= ts_now:
            chunk_end = min(chunk_start + (utils.MAX_POINTS_PER_QUERY - 1) * self._step, ts_now)
            data_points.extend(self._query_chunk_points(promql=promql, data_name=data_name, ts_now=chunk_end,
                                                        ts_last=chunk_start, max_retries=max_retries))
            chunk_start = chunk_end + self._step
        return data_points

    def _query_chunk_points(self, promql: str, data_name: str, ts_now: int, ts_last: int,
                            max_retries: int = 3) -> list:
        if max_retries < 1:
            max_retries = 1
        options = {'start': ts_last, 'end': ts_now, 'step': self._step}
        data_points = []
        for i in range(max_retries):
            try:
                data_raw = prom_query.get_prometheus_data(query=promql, url=self.prom_url, token=self.token,
                                                          range_query=True, options=options, timeout=self.timeout)
                if not prom_query.missing_data(data_raw):
                    for timestamp, data_str in data_raw[0]['values']:
                        data_points.append((int(float(timestamp)), float(data_str)))
                if len(data_points) > 0:
                    break
                elif i == max_retries - 1:
                    utils.logging_or_print(
                        f'{str(self)}: empty {data_name} points from prometheus.',
                        enable_logging=self.enable_logging, level=logging.WARNING)
                else:
                    utils.logging_or_print(
                        f'{str(self)}: empty {data_name} points from prometheus, will retry (retry times: {i + 1}).',
                        enable_logging=self.enable_logging, level=logging.WARNING)
            except Exception as e:
                if i == max_retries - 1:
                    utils.logging_or_print(
                        f'{str(self)}: an error occurred while querying {data_name} points from prometheus: {e}.',
                        enable_logging=self.enable_logging, level=logging.ERROR)
                else:
                    utils.logging_or_print(
                        f'{str(self)}: an error occurred while querying {data_name} points from prometheus: {e}, '
                        f'will retry (retry times: {i + 1}).',
                        enable_logging=self.enable_logging, level=logging.ERROR)
        return data_points

    # query methods
    def query_cpu_points(self, container_id: utils.ContainerId, timestamp_now: int, timestamp_last: int,
                         max_retries: int = 3) -> list:
        """
        :return: [(timestamp, cpu)], cpu unit: 10^(-3)core
        """
        promql_cpu = ('sum(rate(container_cpu_usage_seconds_total{namespace=\'%s\', pod=~\'%s-.*\', '
                      'container=\'%s\'}[1m]))' % (container_id.namespace, container_id.workload,
                                                   container_id.container))
        cpu_points = self._query_points(promql=promql_cpu, data_name='cpu', ts_now=timestamp_now,
                                        ts_last=timestamp_last, max_retries=max_retries)
        return [(ts, cpu * 1000) for ts, cpu in cpu_points]

    def query_mem_points(self, container_id: utils.ContainerId, timestamp_now: int, timestamp_last: int,
                         max_retries: int = 3) -> list:
        """
        :return: [(timestamp, memory)], memory unit: B
        """
        promql_mem = ('max(container_memory_working_set_bytes{namespace=\'%s\', pod=~\'%s-.*\', container=\'%s\'})'
                      % (container_id.namespace, container_id.workload, container_id.container))
        return self._query_points(promql=promql_mem, data_name='memory', ts_now=timestamp_now,
                                  ts_last=timestamp_last, max_retries=max_retries)

    def fetch_history(self, container_id: utils.ContainerId,
                      timestamp_now: int | None = None) -> usage_history.SampleUsageHistory:
        if timestamp_now is None:
            timestamp_now = int(time.time())
        timestamp_last = timestamp_now - self._history_window
        cpu_points = self.query_cpu_points(container_id, timestamp_now, timestamp_last)
        mem_points = self.query_mem_points(container_id, timestamp_now, timestamp_last)
        if prom_query.missing_data(cpu_points) and prom_query.missing_data(mem_points):
            utils.logging_or_print(
                f'{str(self)}: no usage data for container {container_id}, empty history returned.',
                enable_logging=self.enable_logging, level=logging.WARNING)
            return usage_history.SampleUsageHistory()
        timestamps = [ts for ts, _ in cpu_points] + [ts for ts, _ in mem_points]
        # the history length counts one sample per minute
        total_samples = max(len(cpu_points), len(mem_points)) * self._step // 60
        history = usage_history.SampleUsageHistory(
            cpu_samples=[cpu for _, cpu in cpu_points], memory_samples=[mem for _, mem in mem_points],
            first_sample_timestamp=min(timestamps), last_sample_timestamp=max(timestamps),
            total_samples=total_samples)
        utils.logging_or_print(
            f'{str(self)}: history of container {container_id} fetched, {str(history)}.',
            enable_logging=self.enable_logging, level=logging.DEBUG)
        return history

    def fetch_histories(self, namespace: str, workload: str, containers: list,
                        timestamp_now: int | None = None) -> dict[str, usage_history.SampleUsageHistory]:
        if timestamp_now is None:
            timestamp_now = int(time.time())
        return {container: self.fetch_history(utils.ContainerId(namespace, workload, container), timestamp_now)
                for container in containers}
