"""Wrap a plain Python callable as an action body."""

from __future__ import annotations

from collections.abc import Callable

from deployline.core.action_runner import ActionContext


class CallableAction:
    def __init__(self, fn: Callable[[ActionContext], dict[str, bytes]]) -> None:
        self.fn = fn

    def execute(self, context: ActionContext) -> dict[str, bytes]:
        return self.fn(context)

    def __repr__(self) -> str:
        return f"<CallableAction {getattr(self.fn, '__name__', self.fn)!r}>"
