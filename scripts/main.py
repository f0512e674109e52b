"""
   Copyright 2025 FROOOOOOO and Ma-YuXin

   Licensed under the Apache License, Version 2.0 (the "License");
   you may not use this file except in compliance with the License.
   You may obtain a copy of the License at

       http://www.apache.org/licenses/LICENSE-2.0

   Unless required by applicable law or agreed to in writing, software
   distributed under the License is distributed on an "AS IS" BASIS,
   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
   See the License for the specific language governing permissions and
   limitations under the License.
"""

import logging
import argparse
import os
import sys
import time

python_path = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, python_path)
from podrec.history import history_fetcher
from podrec.metric_source import custom_metrics, prom_source
from podrec.recommender import recommender
from podrec.utils import utils, config


def parse_workload(workload_str: str) -> recommender.WorkloadTarget:
    """<namespace>/<workload>:<container>[,<container>...]"""
    try:
        workload_part, containers_part = workload_str.split(':', 1)
        namespace, workload = workload_part.split('/', 1)
    except ValueError:
        raise argparse.ArgumentTypeError(f'invalid workload {workload_str}, expected '
                                         f'<namespace>/<workload>:<container>[,<container>...]')
    containers = [container for container in containers_part.split(',') if container]
    return recommender.WorkloadTarget(namespace=namespace, workload=workload, containers=containers)


def parse_container_id(container_str: str) -> utils.ContainerId:
    """<namespace>/<workload>/<container>"""
    parts = container_str.split('/')
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f'invalid container {container_str}, expected '
                                         f'<namespace>/<workload>/<container>')
    return utils.ContainerId(*parts)


def main(workloads, override_containers, metric_backend, recommend_interval, history_window, metric_timeout,
         response_time_metric, request_count_metric, metric_namespace, metric_label_selector, margin_fraction,
         pod_min_cpu_millicores, pod_min_memory_mb, sla, control_a, control_p_nom, core_max, max_workers):
    estimator_config = config.EstimatorConfig(margin_fraction=margin_fraction,
                                              pod_min_cpu_millicores=pod_min_cpu_millicores,
                                              pod_min_memory_mb=pod_min_memory_mb)
    controller_config = config.ControllerConfig(sla_ms=sla, a=control_a, p_nom=control_p_nom, core_max=core_max)
    recommender_config = config.RecommenderConfig(
        estimator=estimator_config, controller=controller_config, override_containers=set(override_containers),
        response_time_metric=response_time_metric, request_count_metric=request_count_metric,
        metric_namespace=metric_namespace, metric_label_selector=metric_label_selector,
        metric_timeout=metric_timeout, max_workers=max_workers)
    if metric_backend == 'custom-metrics':
        metric_source = custom_metrics.CustomMetricsSource(timeout=metric_timeout)
    else:
        metric_source = prom_source.PrometheusMetricSource(timeout=metric_timeout)
    fetcher = history_fetcher.HistoryFetcher(history_window=history_window)
    pod_recommender = recommender.PodResourceRecommender(recommender_config, metric_source=metric_source)
    service = recommender.RecommenderService(workloads=workloads, history_provider=fetcher.fetch_histories,
                                             recommender=pod_recommender, recommend_interval=recommend_interval)
    print(f'Recommender started: (workloads: {[str(workload) for workload in workloads]}, '
          f'override: {[str(container_id) for container_id in override_containers]}, metric backend: '
          f'{metric_backend}, interval: {recommend_interval} s)')
    service.recommend_once()
    service.start()
    try:
        print('Waiting for Ctrl+C or SIGINT to stop...')
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.shutdown()


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Main function to run the resource recommender.')
    parser.add_argument('--log_level', '-l', type=int, choices=[0, 1, 2, 3, 4], default=3,
                        help='Logging level:\n\t0--CRITICAL\n\t1--ERROR\n\t2--WARNING\n\t3--INFO(default)\n\t4--DEBUG')
    parser.add_argument('--file_name', '-f', type=str, default='',
                        help='log file name, logs are stored in <repo>/logs/<FILE_NAME>.log (default: stderr)')
    parser.add_argument('--workload', '-w', type=parse_workload, action='append', required=True,
                        help='tracked workload, <namespace>/<workload>:<container>[,<container>...], repeatable')
    parser.add_argument('--override', '-o', type=parse_container_id, action='append', default=[],
                        help='container whose cpu target is driven by the response time controller, '
                             '<namespace>/<workload>/<container>, repeatable')
    parser.add_argument('--metric_backend', '-m', type=str, default='custom-metrics',
                        choices=['custom-metrics', 'prometheus'],
                        help='live telemetry source: \'custom-metrics\'--custom metrics API (default), '
                             '\'prometheus\'--prometheus instant queries')
    parser.add_argument('--interval', '-i', type=int, default=utils.RECOMMEND_INTERVAL,
                        help=f'recommend interval, unit: s, default: {utils.RECOMMEND_INTERVAL}')
    parser.add_argument('--history_window', type=int, default=utils.HISTORY_WINDOW,
                        help=f'usage history look-back window, unit: s, default: {utils.HISTORY_WINDOW}')
    parser.add_argument('--metric_timeout', type=int, default=utils.METRIC_TIMEOUT,
                        help=f'deadline of the telemetry fetch of one container, unit: s, '
                             f'default: {utils.METRIC_TIMEOUT}')
    parser.add_argument('--response_time_metric', type=str, default=utils.RESPONSE_TIME_METRIC,
                        help=f'mean response time metric (unit: ms), default: {utils.RESPONSE_TIME_METRIC}')
    parser.add_argument('--request_count_metric', type=str, default=utils.REQUEST_COUNT_METRIC,
                        help=f'request counter metric, default: {utils.REQUEST_COUNT_METRIC}')
    parser.add_argument('--metric_namespace', type=str, default=None,
                        help='namespace of the telemetry objects (default: namespace of the container)')
    parser.add_argument('--metric_label_selector', type=str, default=None, help='label selector of the telemetry')
    parser.add_argument('--recommendation_margin_fraction', type=float, default=utils.MARGIN_FRACTION,
                        help='fraction of usage added as the safety margin to the recommended request')
    parser.add_argument('--pod_recommendation_min_cpu_millicores', type=float, default=utils.POD_MIN_CPU_MILLICORES,
                        help='minimum CPU recommendation for a pod')
    parser.add_argument('--pod_recommendation_min_memory_mb', type=float, default=utils.POD_MIN_MEMORY_MB,
                        help='minimum memory recommendation for a pod')
    parser.add_argument('--control_sla', type=float, default=utils.CONTROL_SLA,
                        help='response time to guarantee, unit: ms')
    parser.add_argument('--control_a', type=float, default=utils.CONTROL_A,
                        help='value in (0, 1) changing how conservative the control is')
    parser.add_argument('--control_p_nom', type=float, default=utils.CONTROL_P_NOM, help='nominal pole')
    parser.add_argument('--control_core_max', type=float, default=utils.CONTROL_CORE_MAX,
                        help='maximum amount of cores to afford for the scaling')
    parser.add_argument('--max_workers', type=int, default=1, help='containers evaluated in parallel, default: 1')
    args = parser.parse_args()
    log_level = logging.INFO
    if args.log_level == 0:
        log_level = logging.CRITICAL
    elif args.log_level == 1:
        log_level = logging.ERROR
    elif args.log_level == 2:
        log_level = logging.WARNING
    elif args.log_level == 3:
        log_level = logging.INFO
    else:
        log_level = logging.DEBUG
    if args.file_name:
        os.makedirs(f'{python_path}/logs', exist_ok=True)
        logging.basicConfig(filename=f'{python_path}/logs/{args.file_name}.log', filemode='a',
                            level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')
    main(workloads=args.workload, override_containers=args.override, metric_backend=args.metric_backend,
         recommend_interval=args.interval, history_window=args.history_window, metric_timeout=args.metric_timeout,
         response_time_metric=args.response_time_metric, request_count_metric=args.request_count_metric,
         metric_namespace=args.metric_namespace, metric_label_selector=args.metric_label_selector,
         margin_fraction=args.recommendation_margin_fraction,
         pod_min_cpu_millicores=args.pod_recommendation_min_cpu_millicores,
         pod_min_memory_mb=args.pod_recommendation_min_memory_mb, sla=args.control_sla, control_a=args.control_a,
         control_p_nom=args.control_p_nom, core_max=args.control_core_max, max_workers=args.max_workers)
