"""
Credential pair: the only state the SDK persists.
"""

from typing import Optional
from pydantic import BaseModel


class CredentialPair(BaseModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token)
