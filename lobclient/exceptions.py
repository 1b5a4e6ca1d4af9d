# lobclient/exceptions.py
"""
Gerarchia delle eccezioni del client.

Solo il layer HTTP solleva; il controller di sessione le converte in
eventi ordine o in last_error. I payload malformati dei feed non
sollevano mai.
"""
from typing import Any, Optional


class LobClientError(Exception):
    """Base di tutti gli errori del client."""


class ConfigurationError(LobClientError):
    """Config mancante o non valida."""


class AuthenticationRequired(LobClientError):
    """Chiamata autorizzata senza token configurato."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class EngineTransportError(LobClientError):
    """Errore di rete / timeout verso il motore."""


class EngineHTTPError(LobClientError):
    """Risposta non-2xx dal motore."""

    def __init__(self, status: int, message: Optional[str] = None, body: Any = None):
        self.status = status
        self.body = body if body is not None else {}
        self.message = message or f"HTTP {status}"
        super().__init__(self.message)


class AuthorizationExpired(EngineHTTPError):
    """
    401 su qualunque endpoint: sessione scaduta. Distinto dagli errori
    di trasporto perche' richiede il reset dello stato utente.
    """

    def __init__(self, body: Any = None):
        super().__init__(401, "Unauthorized", body)
