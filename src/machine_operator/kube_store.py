"""ResourceStore backed by the Kubernetes API.

Resources are custom objects addressed by the group, version and plural
declared on their model class. Writes are JSON merge patches; optimistic
concurrency comes from including ``metadata.resourceVersion`` in the patch
body, which makes the API server answer 409 Conflict on a stale version.

The Kubernetes client is synchronous. Calls run in the default executor;
watches run on a daemon thread and are bridged onto the event loop.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from collections.abc import AsyncIterator, Callable
from typing import Any, TypeVar

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException

from .models import ObjectKey, Resource
from .store import (
    ConflictError,
    NotFoundError,
    StoreError,
    WatchEvent,
    WatchEventType,
    merge_patch,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

# Server-side watch timeout; the stream is reopened when it ends
WATCH_TIMEOUT_SECONDS = 300

_STREAM_END = object()


def load_kube_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster kube config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kube config from local file")


def _translate(e: ApiException, what: str) -> StoreError:
    if e.status == 404:
        return NotFoundError(f"{what} not found")
    if e.status == 409:
        return ConflictError(f"conflict writing {what}: {e.reason}")
    return StoreError(f"API error on {what}: {e.status} {e.reason}")


def label_selector(labels: dict[str, str] | None) -> str:
    """Render a label dict as an equality-based selector."""
    if not labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class KubernetesResourceStore:
    """ResourceStore implementation using ``CustomObjectsApi``."""

    def __init__(self, api: client.CustomObjectsApi | None = None) -> None:
        self._api = api or client.CustomObjectsApi()

    async def _call(self, what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except ApiException as e:
            raise _translate(e, what) from e

    async def get(self, cls: type[R], key: ObjectKey) -> R:
        data = await self._call(
            f"{cls.KIND} {key}",
            self._api.get_namespaced_custom_object,
            cls.GROUP,
            cls.VERSION,
            key.namespace,
            cls.PLURAL,
            key.name,
        )
        return cls.model_validate(data)

    async def list(
        self, cls: type[R], namespace: str = "", labels: dict[str, str] | None = None
    ) -> list[R]:
        selector = label_selector(labels)
        if namespace:
            data = await self._call(
                f"{cls.PLURAL} in {namespace}",
                self._api.list_namespaced_custom_object,
                cls.GROUP,
                cls.VERSION,
                namespace,
                cls.PLURAL,
                label_selector=selector,
            )
        else:
            data = await self._call(
                cls.PLURAL,
                self._api.list_cluster_custom_object,
                cls.GROUP,
                cls.VERSION,
                cls.PLURAL,
                label_selector=selector,
            )
        return [cls.model_validate(item) for item in data.get("items", [])]

    async def patch(
        self, obj: Resource, body: dict[str, Any], precondition_version: str | None = None
    ) -> Resource:
        """Patch the status subresource, then the object itself.

        The second write is preconditioned on the version returned by the
        first so both halves observe the same precondition chain. Status
        goes first: removing the last finalizer of a deleting object makes
        the API server delete it, and nothing may be written after that.
        A conflict on the second write leaves the finalizers unchanged for
        the next reconcile to retry.
        """
        cls = type(obj)
        key = obj.key
        version = precondition_version
        result: dict[str, Any] | None = None

        if "status" in body:
            status_body: dict[str, Any] = {"status": body["status"]}
            if version:
                status_body["metadata"] = {"resourceVersion": version}
            result = await self._call(
                f"{obj} status",
                self._api.patch_namespaced_custom_object_status,
                cls.GROUP,
                cls.VERSION,
                key.namespace,
                cls.PLURAL,
                key.name,
                status_body,
            )
            if version and result is not None:
                version = result["metadata"]["resourceVersion"]

        main = {k: v for k, v in body.items() if k != "status"}
        if main:
            if version:
                main = merge_patch(main, {"metadata": {"resourceVersion": version}})
            result = await self._call(
                str(obj),
                self._api.patch_namespaced_custom_object,
                cls.GROUP,
                cls.VERSION,
                key.namespace,
                cls.PLURAL,
                key.name,
                main,
            )

        if result is None:
            return await self.get(cls, key)
        return cls.model_validate(result)

    async def watch(self, cls: type[R], namespace: str = "") -> AsyncIterator[WatchEvent]:
        """Stream changes until the server closes the watch.

        Raises:
            StoreError: If the underlying watch fails.
        """
        loop = asyncio.get_event_loop()
        queue: asyncio.Queue[Any] = asyncio.Queue()
        stop = threading.Event()

        def stream() -> None:
            w = watch.Watch()
            try:
                if namespace:
                    events = w.stream(
                        self._api.list_namespaced_custom_object,
                        cls.GROUP,
                        cls.VERSION,
                        namespace,
                        cls.PLURAL,
                        timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    )
                else:
                    events = w.stream(
                        self._api.list_cluster_custom_object,
                        cls.GROUP,
                        cls.VERSION,
                        cls.PLURAL,
                        timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    )
                for raw in events:
                    if stop.is_set():
                        break
                    loop.call_soon_threadsafe(queue.put_nowait, raw)
            except Exception as e:  # noqa: BLE001 - handed to the consumer
                loop.call_soon_threadsafe(queue.put_nowait, e)
            finally:
                w.stop()
                loop.call_soon_threadsafe(queue.put_nowait, _STREAM_END)

        thread = threading.Thread(target=stream, name=f"watch-{cls.PLURAL}", daemon=True)
        thread.start()

        try:
            while True:
                item = await queue.get()
                if item is _STREAM_END:
                    return
                if isinstance(item, Exception):
                    raise StoreError(f"watch on {cls.PLURAL} failed: {item}") from item
                try:
                    event_type = WatchEventType(item["type"])
                except ValueError:
                    # BOOKMARK and ERROR notifications carry no object change
                    continue
                yield WatchEvent(type=event_type, obj=cls.model_validate(item["object"]))
        finally:
            stop.set()
