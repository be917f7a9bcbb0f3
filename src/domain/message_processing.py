"""
Pipeline definition: stages, the immutable MessageProcessing pipeline, and
the builder that produces it.

All configuration validation happens here, at build time, so that the
MessageProcessor hot path never has to deal with configuration errors.

Usage:
    pipeline = (
        MessageProcessingBuilder(name="orders", version="2")
        .add_stage("validate", validate_payload)
        .add_stage("enrich", enrich_timestamp, policy=StagePolicy.CONTINUE)
        .build()
    )
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, List, Tuple

from .errors import BuilderStateError, ConfigurationError

logger = logging.getLogger(__name__)


class StagePolicy(str, Enum):
    """What a stage failure does to the pipeline run."""
    FATAL = 'fatal'
    CONTINUE = 'continue'


def _resolve_transform(transform: Any) -> Callable[[Any], Any]:
    """
    Accept a plain callable or an object exposing transform(value).

    Raises:
        ConfigurationError: If nothing callable can be found
    """
    method = getattr(transform, 'transform', None)
    if callable(method):
        return method
    if callable(transform):
        return transform
    raise ConfigurationError(
        f"Stage transform must be callable or expose transform(value). "
        f"Got: {type(transform).__name__}"
    )


@dataclass(frozen=True)
class Stage:
    """
    A named processing step.

    Attributes:
        name: Unique name within its pipeline
        transform: Callable taking the current value and returning the next one.
                   Raise StageRejection to reject; any other exception is a failure.
        policy: FATAL halts the run on failure, CONTINUE skips the stage
    """
    name: str
    transform: Callable[[Any], Any]
    policy: StagePolicy = StagePolicy.FATAL

    @property
    def is_fatal(self) -> bool:
        return self.policy is StagePolicy.FATAL

    def run(self, value: Any) -> Any:
        return self.transform(value)


class MessageProcessing:
    """
    Immutable, ordered sequence of stages.

    Built once by MessageProcessingBuilder and shared read-only between any
    number of concurrent MessageProcessor runs.
    """

    __slots__ = ('_name', '_version', '_stages')

    def __init__(self, name: str, version: str, stages: Tuple[Stage, ...]):
        object.__setattr__(self, '_name', name)
        object.__setattr__(self, '_version', version)
        object.__setattr__(self, '_stages', tuple(stages))

    def __setattr__(self, key, value):
        raise AttributeError("MessageProcessing is immutable")

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> str:
        return self._version

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def stage_names(self) -> List[str]:
        return [stage.name for stage in self._stages]

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def describe(self) -> str:
        """One-line description for logs: name@version[a -> b(continue) -> c]."""
        parts = [
            stage.name if stage.is_fatal else f"{stage.name}({stage.policy.value})"
            for stage in self._stages
        ]
        return f"{self._name}@{self._version}[{' -> '.join(parts)}]"

    def __repr__(self) -> str:
        return f"MessageProcessing({self.describe()})"


class MessageProcessingBuilder:
    """
    Accumulates stage registrations and freezes them into a pipeline.

    Single use: after build() every further call raises BuilderStateError.
    """

    def __init__(self, name: str = 'default', version: str = '1'):
        if not name or not isinstance(name, str):
            raise ConfigurationError("Pipeline name must be a non-empty string")
        self._name = name
        self._version = str(version)
        self._stages: List[Stage] = []
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def add_stage(
        self,
        name: str,
        transform: Any,
        policy: StagePolicy = StagePolicy.FATAL
    ) -> 'MessageProcessingBuilder':
        """
        Register a stage at the end of the pipeline.

        Args:
            name: Stage name, unique within the pipeline
            transform: Callable or object with transform(value)
            policy: StagePolicy (or its string value)

        Returns:
            The builder, for chaining

        Raises:
            BuilderStateError: If build() was already called
            ConfigurationError: On duplicate name, bad name, bad transform or bad policy
        """
        self._ensure_open()

        if not name or not isinstance(name, str):
            raise ConfigurationError(f"Stage name must be a non-empty string. Got: {name!r}")

        if name in (stage.name for stage in self._stages):
            raise ConfigurationError(
                f"Duplicate stage name '{name}' in pipeline '{self._name}'"
            )

        try:
            policy = StagePolicy(policy)
        except ValueError:
            raise ConfigurationError(
                f"Invalid policy for stage '{name}': {policy!r}. "
                f"Expected one of: {[p.value for p in StagePolicy]}"
            )

        self._stages.append(Stage(name=name, transform=_resolve_transform(transform), policy=policy))
        return self

    def build(self) -> MessageProcessing:
        """
        Freeze the registered stages.

        Raises:
            BuilderStateError: If called twice
            ConfigurationError: If no stage was registered
        """
        self._ensure_open()

        if not self._stages:
            raise ConfigurationError(
                f"Pipeline '{self._name}' has no stages; at least one is required"
            )

        self._finalized = True
        pipeline = MessageProcessing(self._name, self._version, tuple(self._stages))
        logger.info(f"Built pipeline {pipeline.describe()}")
        return pipeline

    def _ensure_open(self) -> None:
        if self._finalized:
            raise BuilderStateError(
                f"Builder for pipeline '{self._name}' already finalized"
            )
