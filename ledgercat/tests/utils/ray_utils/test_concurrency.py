import unittest

import ray

from ledgercat.utils.ray_utils.concurrency import invoke_parallel


@ray.remote
def _describe(item, *args, **kwargs):
    return item, args, kwargs


class TestInvokeParallel(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        ray.init(num_cpus=1, ignore_reinit_error=True)

    @classmethod
    def tearDownClass(cls):
        ray.shutdown()

    def test_item_is_first_argument(self):
        pending = invoke_parallel(
            ["a", "b", "c"],
            _describe,
            1,
            max_parallelism=1,
            flag=True,
        )

        self.assertEqual(
            [
                ("a", (1,), {"flag": True}),
                ("b", (1,), {"flag": True}),
                ("c", (1,), {"flag": True}),
            ],
            ray.get(pending),
        )

    def test_kwargs_provider_does_not_leak_between_tasks(self):
        shared = {"flag": True}

        pending = invoke_parallel(
            ["a", "b"],
            _describe,
            max_parallelism=None,
            kwargs_provider=lambda i, item: {"item": item, f"only_{i}": i},
            **shared,
        )

        self.assertEqual(
            [
                ("a", (), {"flag": True, "only_0": 0}),
                ("b", (), {"flag": True, "only_1": 1}),
            ],
            ray.get(pending),
        )
        self.assertEqual({"flag": True}, shared)

    def test_provided_kwargs_override_shared_kwargs(self):
        pending = invoke_parallel(
            ["a"],
            _describe,
            kwargs_provider=lambda i, item: {"item": item, "flag": False},
            flag=True,
        )

        self.assertEqual([("a", (), {"flag": False})], ray.get(pending))

    def test_invalid_max_parallelism(self):
        with self.assertRaises(ValueError):
            invoke_parallel(["a"], _describe, max_parallelism=0)
