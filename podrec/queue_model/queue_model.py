"""
service time model of a single-queue web tier, relating the cpu allocation (core), the arrival of requests within a
control period and the utilization set point:

    ut = ((1000 * a2 + a1) * req + 1000 * a1 * a3 * core) / (req + 1000 * a3 * core)

required_cores() inverts it for core, implied_utilization() evaluates it forward
"""

from podrec.utils import utils


class SingularModelError(ArithmeticError):
    """the inversion is undefined, the utilization set point equals a1"""
    pass


def required_cores(req: float, ut: float, a1: float, a2: float, a3: float,
                   epsilon: float = utils.MARGIN_ERROR) -> float:
    """
    cores needed to serve req requests at utilization ut, may be negative for infeasible set points
    :raise SingularModelError: |a1 - ut| <= epsilon
    """
    denominator = 1000.0 * a3 * (a1 - ut)
    if abs(a1 - ut) <= epsilon or denominator == 0:
        raise SingularModelError(f'a1 ({a1}) - ut ({ut}) is within {epsilon} of 0')
    return req * (ut - a1 - 1000.0 * a2) / denominator


def implied_utilization(req: float, core: float, a1: float, a2: float, a3: float,
                        epsilon: float = utils.MARGIN_ERROR) -> float:
    """utilization implied by serving req requests with core cores"""
    denominator = req + 1000.0 * a3 * core
    if abs(denominator) <= epsilon:
        return a1  # limit of the model when both req and core vanish
    return ((1000.0 * a2 + a1) * req + 1000.0 * a1 * a3 * core) / denominator
