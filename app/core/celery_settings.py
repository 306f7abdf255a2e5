import os


def is_test_env() -> bool:
    return os.getenv("ENV", "local") == "test"


def eager_overrides() -> dict:
    """Under ENV=test tasks run inline and failures land on the EagerResult instead of raising."""
    if not is_test_env():
        return {}
    return {
        "task_always_eager": True,
        "task_eager_propagates": False,
        "task_store_eager_result": False,
    }
