"""Bounded-concurrency deployment of independent VM requests."""

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence, Union

from homeops.errors import ProvisioningError, ValidationError
from homeops.hypervisor import HypervisorBackend
from homeops.models import BatchResult, ProvisionedVM, Stage, VMOutcome, VMRequest
from homeops.tasks import CancelToken

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 3

Provisioner = Callable[[VMRequest, CancelToken], ProvisionedVM]


class DeploymentCoordinator:
    """Fans a batch of VMRequests out across a bounded worker pool.

    ``max_concurrency`` bounds the number of pipelines in flight at once, not
    the size of the batch. One VM's failure never affects another's outcome.
    """

    def __init__(
        self, provisioner: Union[HypervisorBackend, Provisioner], max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    ) -> None:
        if isinstance(provisioner, HypervisorBackend):
            self._provision: Provisioner = provisioner.create
        else:
            self._provision = provisioner
        self.max_concurrency = max_concurrency

    def run_batch(
        self,
        requests: Sequence[VMRequest],
        max_concurrency: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> BatchResult:
        """Provision every request and return one outcome per request, in request order.

        Returns only once every request reached a terminal outcome.
        """
        limit = max_concurrency if max_concurrency is not None else self.max_concurrency
        if limit < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {limit}")
        cancel = cancel or CancelToken()

        outcomes: Dict[int, VMOutcome] = {}
        duplicates = {name for name, count in Counter(r.name for r in requests).items() if count > 1}
        runnable: List[int] = []
        for index, request in enumerate(requests):
            if request.name in duplicates:
                outcomes[index] = VMOutcome(
                    request,
                    error=ValidationError(
                        f"VM name {request.name!r} appears more than once in the batch",
                        field="name",
                        stage=Stage.VALIDATION,
                        vm_name=request.name,
                    ),
                )
            else:
                runnable.append(index)

        if runnable:
            workers = min(limit, len(runnable))
            logger.info(f"🚀 Deploying {len(runnable)} VM(s) with up to {workers} in parallel")
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provision") as executor:
                future_to_index = {executor.submit(self._run_one, requests[i], cancel): i for i in runnable}
                try:
                    for future in as_completed(future_to_index):
                        index = future_to_index[future]
                        outcomes[index] = future.result()
                except BaseException:
                    # Ctrl-C: stop in-flight pipelines before the pool joins them
                    logger.warning("Batch interrupted, cancelling in-flight pipelines")
                    cancel.cancel()
                    raise

        result = BatchResult([outcomes[i] for i in range(len(requests))])
        logger.info(result.get_summary())
        return result

    def _run_one(self, request: VMRequest, cancel: CancelToken) -> VMOutcome:
        try:
            vm = self._provision(request, cancel)
        except ProvisioningError as e:
            logger.error(f"VM {request.name} failed: {e}")
            return VMOutcome(request, vm=getattr(e, "vm", None), error=e)
        except Exception as e:
            logger.exception(f"VM {request.name} failed with an unexpected error")
            error = ProvisioningError(f"unexpected error: {e}", vm_name=request.name, cause=e)
            return VMOutcome(request, error=error)
        return VMOutcome(request, vm=vm)
