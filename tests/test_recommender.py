"""
Tests for the pod resource recommender and the recommender service
"""
import math
import numpy as np
import pytest
from unittest.mock import patch

from podrec.controller import feedback_controller
from podrec.history import usage_history
from podrec.metric_source import base
from podrec.recommender import recommender
from podrec.utils import utils, config

A1, A2, A3 = 0.1963, 0.002, 0.5658


class FakeMetricSource(base.MetricSource):
    def __init__(self, values: dict):
        super().__init__(timeout=1)
        self.values = values  # metric name -> value string
        self.queries = []
        self.timeouts = []

    def query(self, selector, metric_name, timeout=None):
        self.queries.append((str(selector), metric_name))
        self.timeouts.append(timeout)
        return [base.MetricValue({'kind': 'Pod', 'name': 'front-0'}, metric_name, '', self.values[metric_name])]


class FailingMetricSource(base.MetricSource):
    def query(self, selector, metric_name, timeout=None):
        raise base.MetricSourceError('deadline exceeded')


class FlakyMetricSource(FakeMetricSource):
    # fails the queries whose (0-based) call index is in failing_calls
    def __init__(self, values: dict, failing_calls: set):
        super().__init__(values)
        self.failing_calls = failing_calls
        self.calls = 0

    def query(self, selector, metric_name, timeout=None):
        call = self.calls
        self.calls += 1
        if call in self.failing_calls:
            raise base.MetricSourceError('deadline exceeded')
        return super().query(selector, metric_name, timeout=timeout)


class BrokenHistory(usage_history.ContainerUsageHistory):
    def percentile(self, resource, p):
        raise RuntimeError('history unavailable')

    def get_history_length_days(self):
        return 0.0


def make_history(seed: int, days: float = 3.0) -> usage_history.SampleUsageHistory:
    rng = np.random.default_rng(seed)
    samples = int(days * 60 * 24)
    return usage_history.SampleUsageHistory(
        cpu_samples=list(rng.gamma(2.0, 100.0, size=samples)),
        memory_samples=list(rng.normal(300 * 2 ** 20, 30 * 2 ** 20, size=samples)),
        first_sample_timestamp=0, last_sample_timestamp=int(days * 24 * 3600), total_samples=samples)


def expected_core(req: float, core_min: float) -> float:
    target_core = req * (0.0 - A1 - 1000.0 * A2) / (1000.0 * A3 * (A1 - 0.0))
    return min(max(abs(target_core), core_min), 1.0)


FRONT = utils.ContainerId('web', 'front', 'nginx')


class TestPodResourceRecommender:
    """Test the estimator-only path"""

    def test_empty_input(self):
        assert recommender.PodResourceRecommender().get_recommended_pod_resources({}) == {}

    def test_output_keys_match_input(self):
        histories = {'nginx': make_history(1), 'sidecar': make_history(2), 'exporter': make_history(3)}
        result = recommender.PodResourceRecommender().get_recommended_pod_resources(histories, 'web', 'front')
        assert set(result.keys()) == set(histories.keys())

    def test_bounds_are_ordered(self):
        histories = {f'c{i}': make_history(i, days=0.5 + i) for i in range(5)}
        result = recommender.PodResourceRecommender().get_recommended_pod_resources(histories, 'web', 'front')
        for rec in result.values():
            assert rec.mode == utils.RecommendationMode.ESTIMATOR_ONLY
            for resource in utils.RESOURCE_KINDS:
                assert rec.lower_bound[resource] <= rec.target[resource] <= rec.upper_bound[resource]

    def test_floor_enforced_per_container(self):
        histories = {f'c{i}': usage_history.SampleUsageHistory() for i in range(4)}
        result = recommender.PodResourceRecommender().get_recommended_pod_resources(histories, 'web', 'front')
        for rec in result.values():
            for bound in [rec.target, rec.lower_bound, rec.upper_bound]:
                assert bound['cpu'] >= 6
                assert bound['memory'] >= 250 * 2 ** 20 // 4

    def test_estimator_regression(self):
        history = usage_history.SampleUsageHistory(cpu_samples=[200.0] * 100, memory_samples=[2 ** 30] * 100,
                                                   first_sample_timestamp=0, last_sample_timestamp=7 * 24 * 3600,
                                                   total_samples=7 * 60 * 24)
        result = recommender.PodResourceRecommender().get_recommended_pod_resources({'nginx': history})
        assert result['nginx'].target['cpu'] == 230

    def test_broken_history_is_isolated(self):
        histories = {'nginx': make_history(1), 'broken': BrokenHistory()}
        result = recommender.PodResourceRecommender().get_recommended_pod_resources(histories, 'web', 'front')
        assert set(result.keys()) == {'nginx'}

    def test_parallel_evaluation(self):
        histories = {f'c{i}': make_history(i) for i in range(6)}
        sequential = recommender.PodResourceRecommender().get_recommended_pod_resources(histories, 'web', 'front')
        parallel = recommender.PodResourceRecommender(config.RecommenderConfig(max_workers=4)) \
            .get_recommended_pod_resources(histories, 'web', 'front')
        assert {k: v.to_dict() for k, v in sequential.items()} == {k: v.to_dict() for k, v in parallel.items()}


class TestControllerOverride:
    """Test the controller override path"""

    def make_recommender(self, metric_source, **kwargs):
        recommender_config = config.RecommenderConfig(override_containers={FRONT}, **kwargs)
        return recommender.PodResourceRecommender(recommender_config, metric_source=metric_source)

    def test_select_mode(self):
        rec = self.make_recommender(FakeMetricSource({}))
        assert rec.select_mode(FRONT) == utils.RecommendationMode.CONTROLLER_OVERRIDE
        assert rec.select_mode(utils.ContainerId('web', 'front', 'sidecar')) == \
            utils.RecommendationMode.ESTIMATOR_ONLY
        without_source = self.make_recommender(None)
        assert without_source.select_mode(FRONT) == utils.RecommendationMode.ESTIMATOR_ONLY

    def test_override_predicate(self):
        rec = recommender.PodResourceRecommender(
            metric_source=FakeMetricSource({}), override_predicate=lambda container_id: container_id.workload == 'vote')
        assert rec.select_mode(utils.ContainerId('web', 'vote', 'nginx')) == \
            utils.RecommendationMode.CONTROLLER_OVERRIDE
        assert rec.select_mode(FRONT) == utils.RecommendationMode.ESTIMATOR_ONLY
        with pytest.raises(ValueError):
            recommender.PodResourceRecommender(override_predicate='front')

    def test_cpu_target_overridden(self):
        source = FakeMetricSource({'response_time': '1000', 'response_count': '100'})
        rec = self.make_recommender(source, metric_namespace='nginx-ingress')
        history = make_history(1)
        first = rec.get_recommended_pod_resources({'nginx': history}, 'web', 'front')
        assert first['nginx'].mode == utils.RecommendationMode.ESTIMATOR_ONLY  # baseline only
        source.values['response_count'] = '110'
        second = rec.get_recommended_pod_resources({'nginx': history}, 'web', 'front')['nginx']
        estimated = recommender.PodResourceRecommender().get_recommended_pod_resources({'nginx': history})['nginx']
        assert second.mode == utils.RecommendationMode.CONTROLLER_OVERRIDE
        assert second.target['cpu'] == utils.cpu_amount_from_cores(expected_core(10.0, 0.025))
        assert second.target['memory'] == estimated.target['memory']
        assert second.lower_bound == estimated.lower_bound
        assert second.upper_bound == estimated.upper_bound
        assert ('namespaces/nginx-ingress/pods/*', 'response_time') in source.queries

    def test_metric_failure_falls_back_and_keeps_state(self):
        store = feedback_controller.ControllerStateStore()
        store.put(FRONT, feedback_controller.ControllerState(ui=0.42, last_count=100.0, updated_at=1.0))
        rec = recommender.PodResourceRecommender(config.RecommenderConfig(override_containers={FRONT}),
                                                 metric_source=FailingMetricSource(), state_store=store)
        history = make_history(1)
        result = rec.get_recommended_pod_resources({'nginx': history}, 'web', 'front')['nginx']
        estimated = recommender.PodResourceRecommender().get_recommended_pod_resources({'nginx': history})['nginx']
        assert result.mode == utils.RecommendationMode.ESTIMATOR_ONLY
        assert result.to_dict() == estimated.to_dict()
        assert store.get(FRONT).ui == 0.42
        assert store.get(FRONT).last_count == 100.0
        assert store.get(FRONT).updated_at == 1.0

    @pytest.mark.parametrize('response_time', ['+Inf', '1e400'])
    def test_non_finite_telemetry_falls_back_and_keeps_state(self, response_time):
        source = FakeMetricSource({'response_time': '1000', 'response_count': '100'})
        rec = self.make_recommender(source)
        history = make_history(1)
        rec.get_recommended_pod_resources({'nginx': history}, 'web', 'front')
        source.values['response_count'] = '110'
        rec.get_recommended_pod_resources({'nginx': history}, 'web', 'front')
        ui = rec.state_store.get(FRONT).ui
        source.values.update({'response_time': response_time, 'response_count': '120'})
        result = rec.get_recommended_pod_resources({'nginx': history}, 'web', 'front')['nginx']
        estimated = recommender.PodResourceRecommender().get_recommended_pod_resources({'nginx': history})['nginx']
        assert result.mode == utils.RecommendationMode.ESTIMATOR_ONLY
        assert result.to_dict() == estimated.to_dict()
        assert rec.state_store.get(FRONT).ui == ui
        assert rec.state_store.get(FRONT).last_count == 110.0
        source.values.update({'response_time': '1000', 'response_count': '130'})
        following = rec.get_recommended_pod_resources({'nginx': history}, 'web', 'front')['nginx']
        assert following.mode == utils.RecommendationMode.CONTROLLER_OVERRIDE
        assert following.target['cpu'] >= 25
        assert math.isfinite(rec.state_store.get(FRONT).ui)

    def test_metric_failure_of_one_container_keeps_others_controlled(self):
        sidecar = utils.ContainerId('web', 'front', 'sidecar')
        # calls 0-3 set both baselines, call 4 is the response time query of nginx in the second pass
        source = FlakyMetricSource({'response_time': '1000', 'response_count': '100'}, failing_calls={4})
        rec = recommender.PodResourceRecommender(config.RecommenderConfig(override_containers={FRONT, sidecar}),
                                                 metric_source=source)
        histories = {'nginx': make_history(1), 'sidecar': make_history(2)}
        rec.get_recommended_pod_resources(histories, 'web', 'front')
        source.values['response_count'] = '110'
        result = rec.get_recommended_pod_resources(histories, 'web', 'front')
        assert result['nginx'].mode == utils.RecommendationMode.ESTIMATOR_ONLY
        assert rec.state_store.get(FRONT).last_count == 100.0
        assert result['sidecar'].mode == utils.RecommendationMode.CONTROLLER_OVERRIDE
        assert result['sidecar'].target['cpu'] == utils.cpu_amount_from_cores(expected_core(10.0, 0.0125))
        assert rec.state_store.get(sidecar).last_count == 110.0

    @patch('podrec.recommender.recommender.time')
    def test_telemetry_queries_share_deadline(self, mock_time):
        mock_time.monotonic.side_effect = [100.0, 104.0]
        store = feedback_controller.ControllerStateStore()
        store.put(FRONT, feedback_controller.ControllerState(ui=0.0, last_count=100.0, updated_at=1.0))
        source = FakeMetricSource({'response_time': '1000', 'response_count': '110'})
        rec = recommender.PodResourceRecommender(config.RecommenderConfig(override_containers={FRONT},
                                                                          metric_timeout=10),
                                                 metric_source=source, state_store=store)
        result = rec.get_recommended_pod_resources({'nginx': make_history(1)}, 'web', 'front')['nginx']
        assert result.mode == utils.RecommendationMode.CONTROLLER_OVERRIDE
        assert source.timeouts == [10, pytest.approx(6.0)]

    @patch('podrec.recommender.recommender.time')
    def test_deadline_exceeded_by_first_query(self, mock_time):
        mock_time.monotonic.side_effect = [100.0, 111.0]
        store = feedback_controller.ControllerStateStore()
        store.put(FRONT, feedback_controller.ControllerState(ui=0.42, last_count=100.0, updated_at=1.0))
        source = FakeMetricSource({'response_time': '1000', 'response_count': '110'})
        rec = recommender.PodResourceRecommender(config.RecommenderConfig(override_containers={FRONT},
                                                                          metric_timeout=10),
                                                 metric_source=source, state_store=store)
        result = rec.get_recommended_pod_resources({'nginx': make_history(1)}, 'web', 'front')['nginx']
        assert result.mode == utils.RecommendationMode.ESTIMATOR_ONLY
        assert source.queries == [('namespaces/web/pods/*', 'response_time')]
        assert store.get(FRONT).ui == 0.42
        assert store.get(FRONT).last_count == 100.0

    def test_fault_in_one_container_does_not_abort_pass(self):
        def predicate(container_id):
            if container_id.container == 'sidecar':
                raise RuntimeError('predicate failure')
            return False

        rec = recommender.PodResourceRecommender(metric_source=FakeMetricSource({}), override_predicate=predicate)
        result = rec.get_recommended_pod_resources({'nginx': make_history(1), 'sidecar': make_history(2)},
                                                   'web', 'front')
        assert set(result.keys()) == {'nginx', 'sidecar'}
        assert result['sidecar'].mode == utils.RecommendationMode.ESTIMATOR_ONLY

    def test_state_discarded_when_container_untracked(self):
        source = FakeMetricSource({'response_time': '1000', 'response_count': '100'})
        sidecar = utils.ContainerId('web', 'front', 'sidecar')
        rec = recommender.PodResourceRecommender(config.RecommenderConfig(override_containers={FRONT, sidecar}),
                                                 metric_source=source)
        rec.get_recommended_pod_resources({'nginx': make_history(1), 'sidecar': make_history(2)}, 'web', 'front')
        assert FRONT in rec.state_store and sidecar in rec.state_store
        rec.get_recommended_pod_resources({'nginx': make_history(1)}, 'web', 'front')
        assert FRONT in rec.state_store
        assert sidecar not in rec.state_store


class TestRecommenderService:
    """Test periodic passes"""

    def test_recommend_once(self):
        calls = []

        def history_provider(namespace, workload, containers):
            calls.append((namespace, workload, tuple(containers)))
            if workload == 'broken':
                raise RuntimeError('prometheus down')
            return {container: make_history(len(calls)) for container in containers}

        workloads = [recommender.WorkloadTarget('web', 'front', ['nginx', 'sidecar']),
                     recommender.WorkloadTarget('web', 'broken', ['app'])]
        service = recommender.RecommenderService(workloads, history_provider, recommender.PodResourceRecommender(),
                                                 recommend_interval=30, buffer_size=2)
        for _ in range(3):
            results = service.recommend_once()
            assert len(results) == 1
        latest = service.get_latest_recommendation('web', 'front')
        assert set(latest.recommendations.keys()) == {'nginx', 'sidecar'}
        assert len(service._recommendation_buffer[('web', 'front')]) == 2
        assert service.get_latest_recommendation('web', 'broken') is None
        assert not service.is_running()

    def test_invalid_workload(self):
        with pytest.raises(ValueError):
            recommender.WorkloadTarget('web', 'front', [])
