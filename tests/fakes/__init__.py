from .service import FakeRemoteService

__all__ = ["FakeRemoteService"]
