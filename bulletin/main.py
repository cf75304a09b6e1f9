from bulletin.api.main import app

__all__ = ["app"]
