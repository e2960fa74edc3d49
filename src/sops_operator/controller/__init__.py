"""
Drives the [SopsSecretReconciler] from watches on the Kubernetes API.
"""

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
import threading
from typing import Any

from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.client.api_client import ApiClient
from kubernetes.client.exceptions import ApiException
from kubernetes.watch import Watch
from loguru import logger
from urllib3.exceptions import HTTPError

from sops_operator.controller.workqueue import WorkQueue
from sops_operator.reconciler import SopsSecretReconciler
from sops_operator.resources import ObjectKey
from sops_operator.resources.sopssecret import GROUP, PLURAL, VERSION, SopsSecret

ALL_NAMESPACES = ""

ListCall = tuple[Callable[..., Any], tuple[Any, ...]]
""" A list function of the Kubernetes client with its positional arguments. """


class Controller:
    """
    Watches SopsSecrets and the Secrets they control, and reconciles the affected SopsSecrets on a pool of worker
    threads. Changes to a Secret enqueue its controlling SopsSecret, so that manual edits of a generated Secret are
    reverted.
    """

    def __init__(
        self,
        client: ApiClient,
        reconciler: SopsSecretReconciler,
        namespaces: Iterable[str] = (ALL_NAMESPACES,),
        workers: int = 1,
        resync_period: float = 600.0,
        watch_timeout: int = 300,
        queue: WorkQueue[ObjectKey] | None = None,
    ) -> None:
        """
        Args:
            client: The Kubernetes API client.
            reconciler: The reconciler that workers call for every key.
            namespaces: The namespaces to watch. An empty string watches all namespaces.
            workers: The number of keys that are reconciled concurrently.
            resync_period: Seconds between two re-lists of all SopsSecrets.
            watch_timeout: The server-side timeout of a single watch request, after which it is restarted.
            queue: The work queue. A new one is created if not specified.
        """

        self.reconciler = reconciler
        self.namespaces = list(namespaces) or [ALL_NAMESPACES]
        self.workers = workers
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.queue: WorkQueue[ObjectKey] = queue if queue is not None else WorkQueue()
        self._core = CoreV1Api(client)
        self._custom = CustomObjectsApi(client)
        self._generations: dict[ObjectKey, int] = {}
        self._generations_lock = threading.Lock()

    def run(self, stop: threading.Event) -> None:
        """
        Run the controller until *stop* is set. Blocks until all threads have finished.
        """

        logger.info(
            "Starting controller with {} worker(s) for namespace(s) {}",
            self.workers,
            ", ".join(ns or "<all>" for ns in self.namespaces),
        )

        threads: list[threading.Thread] = []
        for namespace in self.namespaces:
            threads += [
                self._start_thread(f"watch-sopssecrets-{namespace}", self._watch_sopssecrets, namespace, stop),
                self._start_thread(f"watch-secrets-{namespace}", self._watch_secrets, namespace, stop),
            ]
        threads.append(self._start_thread("resync", self._resync_loop, stop))

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="reconcile") as executor:
            futures = [executor.submit(self._worker) for _ in range(self.workers)]
            stop.wait()
            logger.info("Stopping controller")
            self.queue.shutdown()
            for future in futures:
                future.result()

        for thread in threads:
            thread.join()
        logger.info("Controller stopped")

    def process_next(self) -> bool:
        """
        Reconcile the next key from the queue. Returns `False` once the queue is shutting down.
        """

        key = self.queue.get()
        if key is None:
            return False

        log = logger.bind(namespace=key.namespace, name=key.name)
        try:
            result = self.reconciler.reconcile(key, log)
        except Exception:
            log.exception("Unhandled error while reconciling SopsSecret {}", key)
            self.queue.add_rate_limited(key)
        else:
            if result.requeue_after > timedelta(0):
                self.queue.forget(key)
                self.queue.add_after(key, result.requeue_after.total_seconds())
            elif result.requeue:
                self.queue.add_rate_limited(key)
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)

        return True

    def resync(self) -> None:
        """
        List all SopsSecrets in the watched namespaces and enqueue them.
        """

        for namespace in self.namespaces:
            list_func, args = self._list_sopssecrets(namespace)
            response = list_func(*args)
            items = response.get("items", [])
            logger.debug("Resync of namespace {!r} found {} SopsSecret(s)", namespace, len(items))
            for item in items:
                self.on_sopssecret_event("SYNC", item)

    def on_sopssecret_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """
        Enqueue the SopsSecret of a watch or resync event. `MODIFIED` events that leave `metadata.generation`
        unchanged (status and metadata writes, including the operator's own status writes) are dropped, so that they
        do not cut short the requeue delay of a failed reconcile.
        """

        metadata = obj.get("metadata") or {}
        key = ObjectKey(metadata.get("namespace", ""), metadata["name"])
        generation = metadata.get("generation")

        with self._generations_lock:
            if event_type == "DELETED":
                self._generations.pop(key, None)
            elif generation is not None:
                previous = self._generations.get(key)
                self._generations[key] = generation
                if event_type == "MODIFIED" and previous == generation:
                    logger.trace("MODIFIED SopsSecret {} without generation change, skipping", key)
                    return

        logger.trace("{} SopsSecret {}", event_type, key)
        self.queue.add(key)

    def on_secret_event(self, event_type: str, obj: dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        for ref in metadata.get("ownerReferences") or []:
            if not ref.get("controller"):
                continue
            if ref.get("apiVersion", "").split("/")[0] == GROUP and ref.get("kind") == SopsSecret.KIND:
                key = ObjectKey(metadata.get("namespace", ""), ref["name"])
                logger.trace("{} Secret {}/{}, enqueueing its owner", event_type, key.namespace, metadata.get("name"))
                self.queue.add(key)

    # Internal

    def _worker(self) -> None:
        while self.process_next():
            pass

    def _start_thread(self, name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread

    def _list_sopssecrets(self, namespace: str) -> ListCall:
        if namespace == ALL_NAMESPACES:
            return self._custom.list_cluster_custom_object, (GROUP, VERSION, PLURAL)
        return self._custom.list_namespaced_custom_object, (GROUP, VERSION, namespace, PLURAL)

    def _list_secrets(self, namespace: str) -> ListCall:
        if namespace == ALL_NAMESPACES:
            return self._core.list_secret_for_all_namespaces, ()
        return self._core.list_namespaced_secret, (namespace,)

    def _watch_sopssecrets(self, namespace: str, stop: threading.Event) -> None:
        self._watch("SopsSecrets", self._list_sopssecrets(namespace), self.on_sopssecret_event, stop)

    def _watch_secrets(self, namespace: str, stop: threading.Event) -> None:
        self._watch("Secrets", self._list_secrets(namespace), self.on_secret_event, stop)

    def _watch(
        self,
        what: str,
        list_call: ListCall,
        handler: Callable[[str, dict[str, Any]], None],
        stop: threading.Event,
    ) -> None:
        """
        Watch the objects returned by *list_call* and pass every event to *handler* until *stop* is set. The watch is
        restarted when it times out or fails; if the resource version expired, it restarts from the current state.
        """

        list_func, args = list_call
        resource_version: str | None = None
        while not stop.is_set():
            watch = Watch()
            kwargs: dict[str, Any] = {"timeout_seconds": self.watch_timeout}
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                for event in watch.stream(list_func, *args, **kwargs):
                    if stop.is_set():
                        watch.stop()
                        break
                    raw = event["raw_object"]
                    if event["type"] == "ERROR":
                        logger.debug("Watch on {} returned an error, restarting: {}", what, raw.get("message"))
                        resource_version = None
                        break
                    handler(event["type"], raw)
                else:
                    resource_version = watch.resource_version
            except ApiException as exc:
                if exc.status == 410:
                    logger.debug("Resource version for {} expired, restarting watch", what)
                    resource_version = None
                    continue
                logger.warning("Watch on {} failed, retrying: {} {}", what, exc.status, exc.reason)
                stop.wait(1)
            except HTTPError as exc:
                logger.warning("Watch on {} failed, retrying: {}", what, exc)
                stop.wait(1)

    def _resync_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.resync_period):
            try:
                self.resync()
            except (ApiException, HTTPError) as exc:
                logger.warning("Resync failed: {}", exc)
