from gatehouse.security.apikeys import API_KEY_HEADER, APIKeyService

__all__ = ["API_KEY_HEADER", "APIKeyService"]
