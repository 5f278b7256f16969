from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Operation Registry - maps an operation type tag to its payload model
class OperationRegistry(Registry[type[BaseModel]]):
    """Registry for operation payload models (recipe.extract, voice.track, ...)."""

    def __init__(self):
        super().__init__("Operation")


# Handler Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for handlers that execute one operation type."""

    async def handle(self, ctx: Any, payload: BaseModel) -> dict[str, Any]:
        """
        Execute a job.

        Args:
            ctx: JobContext for the current lease (progress reporting, ids)
            payload: Validated payload model for the operation type

        Returns:
            Result dictionary stored with the completed job
        """
        ...


class HandlerRegistry(Registry[JobHandler]):
    """Registry for job handlers keyed by operation type."""

    def __init__(self):
        super().__init__("Handler")
