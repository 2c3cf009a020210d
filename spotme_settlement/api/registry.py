"""Action registry - one typed handler per action tag"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from spotme_settlement.config import Settings
from spotme_settlement.infrastructure.clients.gateway import GatewayPort


@dataclass
class ActionContext:
    """Per-request collaborators handed to every handler"""

    db: Session
    gateway: GatewayPort
    config: Settings
    request_id: str


Handler = Callable[[BaseModel, ActionContext], Awaitable[BaseModel]]


class ActionRegistry:
    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, action: str) -> Callable[[Handler], Handler]:
        """Decorator binding a handler to an action tag; a tag can be bound once"""

        def decorator(handler: Handler) -> Handler:
            if action in self._handlers:
                raise ValueError(f"Handler already registered for action: {action}")
            self._handlers[action] = handler
            return handler

        return decorator

    def get(self, action: str) -> Optional[Handler]:
        return self._handlers.get(action)

    def actions(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, action: object) -> bool:
        return action in self._handlers

    async def dispatch(self, command: BaseModel, ctx: ActionContext) -> BaseModel:
        handler = self._handlers[command.action]
        return await handler(command, ctx)


registry = ActionRegistry()
