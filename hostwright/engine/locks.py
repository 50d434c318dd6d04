"""Per-resource advisory locks shared by concurrent deployments.

Locks are taken twice: an ``asyncio.Lock`` per ``(host, resource)`` for plans
running in this process, and a ``flock`` on the host for other hostwright
processes deploying to the same machine.
"""

import asyncio
import contextlib

# Resources every project on a host contends for. Held only for the step
# that needs them; everything else is held for the whole run.
# "nginx": `nginx -t` and reload read every enabled site on the host.
SHARED_RESOURCES = {"apt", "nginx"}


class ResourceLocks:
    """Registry of asyncio locks keyed by (host, resource name)."""

    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def lock(self, host, resource) -> asyncio.Lock:
        return self._locks.setdefault((host, resource), asyncio.Lock())

    def is_locked(self, host, resource) -> bool:
        lock = self._locks.get((host, resource))
        return lock is not None and lock.locked()

    @contextlib.asynccontextmanager
    async def hold(self, host, resources, executor=None):
        """Acquire all *resources* in sorted order, release on exit.

        With *executor*, each resource is also locked on the host itself
        after the in-process lock is held. Sorted acquisition means two runs
        can never wait on each other in a cycle.
        """
        async with contextlib.AsyncExitStack() as stack:
            for resource in sorted(set(resources)):
                lock = self.lock(host, resource)
                await lock.acquire()
                stack.callback(lock.release)
                if executor is not None:
                    await stack.enter_async_context(executor.hold_lock(resource))
            yield


DEFAULT_LOCKS = ResourceLocks()
