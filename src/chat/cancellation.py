"""Generation counter used to recognise responses that arrive too late."""

from dataclasses import dataclass


class GenerationCounter:
    def __init__(self) -> None:
        self._generation = 0

    @property
    def current(self) -> int:
        return self._generation

    def advance(self) -> "RequestToken":
        self._generation += 1
        return self.token()

    def token(self) -> "RequestToken":
        return RequestToken(generation=self._generation, counter=self)


@dataclass(frozen=True, slots=True)
class RequestToken:
    generation: int
    counter: GenerationCounter

    @property
    def is_current(self) -> bool:
        return self.counter.current == self.generation
