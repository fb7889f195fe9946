from typing import Any, Callable, Dict, Iterable, List, Optional

import ray
from ray.types import ObjectRef


def invoke_parallel(
    items: Iterable,
    ray_task: Callable,
    *args,
    max_parallelism: Optional[int] = 1000,
    kwargs_provider: Optional[Callable[[int, Any], Dict[str, Any]]] = None,
    **kwargs,
) -> List[ObjectRef]:
    """
    Submits one invocation of the given Ray task per item, keeping at most
    `max_parallelism` invocations in flight. Submission blocks until one of
    the in-flight invocations finishes whenever the limit is reached.

    Args:
        items: Items to submit a task for, in order.
        ray_task: Ray task to invoke.
        *args: Positional arguments of every invocation. The item is passed
            before them unless `kwargs_provider` is given.
        max_parallelism: Maximum in-flight invocations, or None for no limit.
        kwargs_provider: Callback that takes the index and item and returns
            the keyword arguments of that invocation. Its keys override any
            shared **kwargs with the same name.
        **kwargs: Keyword arguments shared by every invocation.
    Returns:
        Object references of the submitted tasks, in item order.
    """
    if max_parallelism is not None and max_parallelism <= 0:
        raise ValueError(f"Max parallelism ({max_parallelism}) must be > 0.")
    pending_ids = []
    in_flight = []
    for i, item in enumerate(items):
        if max_parallelism is not None and len(in_flight) >= max_parallelism:
            _, in_flight = ray.wait(in_flight, num_returns=1, fetch_local=False)
        if kwargs_provider is None:
            pending_id = ray_task.remote(item, *args, **kwargs)
        else:
            task_kwargs = {**kwargs, **kwargs_provider(i, item)}
            pending_id = ray_task.remote(*args, **task_kwargs)
        pending_ids.append(pending_id)
        in_flight.append(pending_id)
    return pending_ids
