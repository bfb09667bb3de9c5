"""Per-process push context.

A ``PushContext`` is everything a process needs before it can touch a URI
or call a controller: the plugin registry, the scheme bindings, one client
per controller and the retry policies.  The driver bootstraps one, and so
does every distributed worker, from nothing but the job spec.
"""

import time
from dataclasses import dataclass, field
from typing import Callable

import structlog

from segment_push.controller import ControlPlane, connect
from segment_push.filesystem import FileSystemRegistry, PluginRegistry
from segment_push.retry import RetryPolicy
from segment_push.spec import JobSpec, RetryConfig

logger = structlog.get_logger()


def retry_policy_from_config(config: RetryConfig, sleep: Callable[[float], None] = time.sleep) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.max_attempts,
        base_delay=config.base_delay_seconds,
        max_delay=config.max_delay_seconds,
        multiplier=config.multiplier,
        jitter=config.jitter,
        sleep=sleep,
    )


@dataclass
class PushContext:
    """Registries, controller clients and retry policies for one process."""

    spec: JobSpec
    plugins: PluginRegistry
    filesystems: FileSystemRegistry
    controllers: list[ControlPlane]
    retry_policy: RetryPolicy
    lineage_retry_policy: RetryPolicy
    worker: bool = field(default=False)

    @classmethod
    def bootstrap(
        cls,
        spec: JobSpec,
        worker: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "PushContext":
        """Build fresh registries and clients from the job spec."""
        plugins = PluginRegistry()
        filesystems = FileSystemRegistry.from_specs(spec.filesystems, plugins)
        controllers = [connect(uri, auth_token=spec.auth_token) for uri in spec.controller_uris]

        retry_policy = retry_policy_from_config(spec.push.retry, sleep=sleep)
        lineage_retry_policy = retry_policy.with_attempts(spec.push.retry.effective_lineage_attempts)

        logger.debug(
            "push_context_bootstrapped",
            worker=worker,
            schemes=filesystems.schemes(),
            controllers=spec.controller_uris,
        )
        return cls(
            spec=spec,
            plugins=plugins,
            filesystems=filesystems,
            controllers=controllers,
            retry_policy=retry_policy,
            lineage_retry_policy=lineage_retry_policy,
            worker=worker,
        )

    def close(self) -> None:
        for controller in self.controllers:
            controller.close()

    def __enter__(self) -> "PushContext":
        return self

    def __exit__(self, *args) -> None:
        self.close()
