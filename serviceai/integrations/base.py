from abc import ABC, abstractmethod
from typing import Optional

from serviceai.models import SendReceipt


class MessageSender(ABC):
    """
    Narrow SMS capability used by the dispatcher.

    Implementations raise ProviderError (transient or permanent) on failure
    and return a SendReceipt on acceptance by the vendor.
    """

    name: str = "unknown"
    cost_per_segment: float = 0.0

    @property
    @abstractmethod
    def is_configured(self) -> bool: ...

    @abstractmethod
    async def send(
        self,
        to: str,
        body: str,
        from_number: Optional[str] = None,
        status_callback: Optional[str] = None
    ) -> SendReceipt: ...
