from abc import ABC, abstractmethod

from betsettle.models.fixture import FixtureResult


class BaseResultGateway(ABC):
    """Abstract source of fixture results for settlement."""

    name = "base"

    @abstractmethod
    async def get_result(self, fixture_id: str) -> FixtureResult:
        """Fetch the current result for one fixture.

        Must be idempotent and side-effect free. Raises TransientFetchFailure
        when the result cannot be obtained; never returns a guessed result.
        A result is authoritative only when `finished` is True.
        """
        ...

    @property
    def circuit_open(self) -> bool:
        return False

    async def aclose(self) -> None:
        return None
