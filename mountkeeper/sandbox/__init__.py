from mountkeeper.sandbox.local import spawn_local


def create_spawner(backend="local"):
    if backend == "local":
        return spawn_local
    raise ValueError(f"Unknown sandboxfs backend: {backend}")
