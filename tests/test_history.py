"""
Tests for usage histories and the history fetcher
"""
import pytest
from unittest.mock import patch

from podrec.history import history_fetcher, usage_history
from podrec.utils import utils, prom_query


class TestSampleUsageHistory:
    """Test the numpy backed history"""

    def test_percentile(self):
        history = usage_history.SampleUsageHistory(cpu_samples=[100, 200, 300, 400, 500],
                                                   memory_samples=[1000, 2000, 3000])
        assert history.percentile('cpu', 0.5) == 300
        assert history.percentile('cpu', 1.0) == 500
        assert history.percentile('memory', 0.0) == 1000

    def test_empty_history(self):
        history = usage_history.SampleUsageHistory()
        assert history.is_empty()
        assert history.percentile('cpu', 0.9) == 0
        assert history.get_history_length_days() == 0.0

    def test_unknown_resource(self):
        with pytest.raises(ValueError):
            usage_history.SampleUsageHistory().percentile('gpu', 0.5)

    def test_history_length_is_min_of_lifespan_and_samples(self):
        history = usage_history.SampleUsageHistory(cpu_samples=[1.0] * 720, first_sample_timestamp=0,
                                                   last_sample_timestamp=2 * 24 * 3600)
        assert history.get_history_length_days() == pytest.approx(0.5)
        history = usage_history.SampleUsageHistory(cpu_samples=[1.0] * 10, first_sample_timestamp=0,
                                                   last_sample_timestamp=3600, total_samples=2 * 60 * 24)
        assert history.get_history_length_days() == pytest.approx(1 / 24)

    def test_add_sample(self):
        history = usage_history.SampleUsageHistory()
        history.add_sample('cpu', 150.0, timestamp=1000)
        history.add_sample('cpu', -10.0, timestamp=1060)
        assert history.total_samples == 2
        assert history.first_sample_timestamp == 1000
        assert history.last_sample_timestamp == 1060
        assert history.percentile('cpu', 0.0) == 0

    def test_invalid_timestamps(self):
        with pytest.raises(ValueError):
            usage_history.SampleUsageHistory(first_sample_timestamp=10, last_sample_timestamp=0)


class TestHistoryFetcher:
    """Test building histories from prometheus range queries"""

    @patch('podrec.history.history_fetcher.prom_query.get_prometheus_data')
    def test_fetch_history(self, mock_get_data):
        def fake_data(query, url, token, range_query, options, timeout):
            assert range_query
            assert options['step'] == 60
            if 'container_cpu_usage_seconds_total' in query:
                return [{'metric': {}, 'values': [[0, '0.1'], [60, '0.2'], [120, '0.3']]}]
            return [{'metric': {}, 'values': [[0, '1048576'], [60, '2097152'], [120, '3145728']]}]

        mock_get_data.side_effect = fake_data
        fetcher = history_fetcher.HistoryFetcher(history_window=3600, step=60)
        history = fetcher.fetch_history(utils.ContainerId('web', 'front', 'nginx'), timestamp_now=3600)
        assert history.percentile('cpu', 1.0) == 300
        assert history.percentile('memory', 0.0) == 1048576
        assert history.first_sample_timestamp == 0
        assert history.last_sample_timestamp == 120
        cpu_query = mock_get_data.call_args_list[0].kwargs['query']
        assert 'namespace=\'web\'' in cpu_query
        assert 'pod=~\'front-.*\'' in cpu_query
        assert 'container=\'nginx\'' in cpu_query

    @patch('podrec.history.history_fetcher.prom_query.get_prometheus_data')
    def test_fetch_history_failure(self, mock_get_data):
        mock_get_data.side_effect = prom_query.PrometheusQueryError('Error: 503, unavailable')
        fetcher = history_fetcher.HistoryFetcher(history_window=3600)
        history = fetcher.fetch_history(utils.ContainerId('web', 'front', 'nginx'), timestamp_now=3600)
        assert history.is_empty()
        assert mock_get_data.call_count == 6  # 3 retries for cpu and memory each

    @patch('podrec.history.history_fetcher.prom_query.get_prometheus_data')
    def test_default_window_split_into_chunks(self, mock_get_data):
        """the default 8 day window at 60 s resolution exceeds the points limit of one range query"""
        def fake_data(query, url, token, range_query, options, timeout):
            assert (options['end'] - options['start']) // options['step'] + 1 <= utils.MAX_POINTS_PER_QUERY
            return [{'metric': {}, 'values': [[ts, '0.1'] for ts in
                                              range(options['start'], options['end'] + 1, options['step'])]}]

        mock_get_data.side_effect = fake_data
        timestamp_now = 10 ** 9
        fetcher = history_fetcher.HistoryFetcher()
        history = fetcher.fetch_history(utils.ContainerId('web', 'front', 'nginx'), timestamp_now=timestamp_now)
        assert mock_get_data.call_count == 4  # 2 chunks for cpu and memory each
        ranges = [(call.kwargs['options']['start'], call.kwargs['options']['end'])
                  for call in mock_get_data.call_args_list[:2]]
        assert ranges[0][0] == timestamp_now - utils.HISTORY_WINDOW
        assert ranges[1][0] == ranges[0][1] + utils.HISTORY_STEP
        assert ranges[1][1] == timestamp_now
        assert history.total_samples == utils.HISTORY_WINDOW // utils.HISTORY_STEP + 1
        assert history.get_history_length_days() == pytest.approx(8.0)

    @patch('podrec.history.history_fetcher.prom_query.get_prometheus_data')
    def test_history_length_with_coarse_step(self, mock_get_data):
        mock_get_data.return_value = [{'metric': {}, 'values': [[ts, '0.1'] for ts in range(0, 86400, 300)]}]
        fetcher = history_fetcher.HistoryFetcher(history_window=86400, step=300)
        history = fetcher.fetch_history(utils.ContainerId('web', 'front', 'nginx'), timestamp_now=86400)
        assert history.total_samples == 288 * 5
        assert history.get_history_length_days() == pytest.approx((86400 - 300) / 86400)

    @patch('podrec.history.history_fetcher.prom_query.get_prometheus_data')
    def test_fetch_histories(self, mock_get_data):
        mock_get_data.return_value = []
        fetcher = history_fetcher.HistoryFetcher()
        histories = fetcher.fetch_histories('web', 'front', ['nginx', 'sidecar'], timestamp_now=3600)
        assert set(histories.keys()) == {'nginx', 'sidecar'}
        assert all(history.is_empty() for history in histories.values())
