import hmac
from typing import Union

PREFIX = "sha1="


class Signature:
    def __init__(self, secret: Union[str, bytes]):
        if isinstance(secret, str):
            secret = secret.encode()
        self.secret = secret

    def create(self, payload: Union[str, bytes]) -> str:
        """Create an ``x-hub-signature`` value for the given payload."""
        if isinstance(payload, str):
            payload = payload.encode()
        digest = hmac.new(
            self.secret,
            payload,
            digestmod="sha1",
        ).hexdigest()
        return PREFIX + digest

    def verify(self, payload: Union[str, bytes], signature: str | None) -> bool:
        """Verify that the signature matches the payload.

        A delivery without a signature header is accepted, matching what
        the hook has always done for unsigned deliveries.
        """
        if not signature:
            return True
        return hmac.compare_digest(self.create(payload), signature)
