"""
Custom action registry.

Reaction rules with a CustomAction carry only a function name. The
function is looked up here at dispatch time and invoked with an
ActionContext; it may be a plain function or a coroutine function.

Invariants:
    - Names are registered once; re-registration fails loudly
    - Registration happens before freeze; lookups after freeze are lock-free
    - Any exception raised by a function surfaces as CustomActionError
"""

from __future__ import annotations

import inspect
import logging
import threading
from typing import Any, Callable, Dict

from ..errors import CustomActionError, DuplicateRuleError, RegistryFrozenError

logger = logging.getLogger(__name__)

ActionFn = Callable[[Any], Any]


class CustomActionRegistry:
    """Process-wide name -> function mapping for custom actions.

    Example:
        >>> actions = CustomActionRegistry()
        >>> actions.register("notify", notify_owner)
        >>> await actions.invoke("notify", ctx)
    """

    def __init__(self) -> None:
        self._actions: Dict[str, ActionFn] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, name: str, fn: ActionFn) -> None:
        """Register a custom action.

        Raises:
            RegistryFrozenError: If the registry is frozen
            DuplicateRuleError: If the name is already taken
        """
        if not callable(fn):
            raise TypeError(f"Custom action '{name}' must be callable")
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"Cannot register action '{name}': registry is frozen")
            if name in self._actions:
                raise DuplicateRuleError(f"Custom action '{name}' already registered")
            self._actions[name] = fn
        logger.debug(f"Registered custom action: {name}")

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def names(self) -> list[str]:
        return list(self._actions)

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    async def invoke(self, name: str, ctx: Any) -> Any:
        """Invoke a registered action and return its result.

        Raises:
            CustomActionError: If the name is unknown or the function raises
        """
        fn = self._actions.get(name)
        if fn is None:
            raise CustomActionError(name, "no such action registered")
        try:
            result = fn(ctx)
            if inspect.isawaitable(result):
                result = await result
        except CustomActionError:
            raise
        except Exception as e:
            logger.error(f"Custom action '{name}' failed: {e}", exc_info=True)
            raise CustomActionError(name, str(e) or type(e).__name__) from e
        return result
