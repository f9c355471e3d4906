"""
Per-gene fan-out.

Stages that fit each gene independently hand a module-level worker and
one argument tuple per gene to ``map_genes``. Results come back in input
order, so aggregation steps (trend fit, prior fit) just consume the
returned list.
"""

import logging

from joblib import Parallel, delayed

logger = logging.getLogger(__name__)


def map_genes(worker, tasks, n_jobs=1, batch_size="auto"):
    """
    Apply ``worker(*task)`` to every task.

    Parameters
    ----------
    worker : callable
        Module-level function (must be picklable for n_jobs != 1).
    tasks : iterable of tuple
        Positional arguments, one tuple per gene.
    n_jobs : int, default 1
        joblib worker count; -1 uses all cores.
    batch_size : int or "auto"
        Tasks per joblib dispatch.

    Returns
    -------
    list
        Worker results in task order.
    """
    tasks = list(tasks)
    if n_jobs == 1 or len(tasks) < 2:
        return [worker(*task) for task in tasks]

    logger.debug("Dispatching %d gene tasks to %s workers", len(tasks), n_jobs)
    return Parallel(n_jobs=n_jobs, batch_size=batch_size)(
        delayed(worker)(*task) for task in tasks
    )
