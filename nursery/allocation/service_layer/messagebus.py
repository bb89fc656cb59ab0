import logging
from typing import Any

from nursery.allocation.domain import commands, events
from nursery.allocation.service_layer import handlers, unit_of_work

logger = logging.getLogger(__name__)

Message = commands.Command | events.Event

COMMAND_HANDLERS: dict[type[commands.Command], type[handlers.Handler[Any, Any]]] = {
    commands.ConfirmOrder: handlers.ConfirmOrderCmdHandler,
    commands.StartPicking: handlers.StartPickingCmdHandler,
    commands.SelectBatch: handlers.SelectBatchCmdHandler,
    commands.MarkPicked: handlers.MarkPickedCmdHandler,
    commands.CancelAllocation: handlers.CancelAllocationCmdHandler,
    commands.DispatchOrder: handlers.DispatchOrderCmdHandler,
    commands.VoidOrder: handlers.VoidOrderCmdHandler,
}


async def handle(message: Message, uow: unit_of_work.AbstractUnitOfWork) -> list[Any]:
    results: list[Any] = []
    queue: list[Message] = [message]
    while queue:
        message = queue.pop(0)
        if isinstance(message, commands.Command):
            handler_cls = COMMAND_HANDLERS.get(type(message))
            if handler_cls is None:
                raise Exception(f"Unknown message {message}")
            results.append(await handler_cls(uow).handle(message))  # type: ignore[call-arg]
            queue.extend(uow.collect_new_events())
        elif isinstance(message, events.Event):
            await _handle_event(message)
        else:
            raise Exception(f"Unknown message {message}")
    return results


async def _handle_event(event: events.Event) -> None:
    # runs after commit; failures are only logged
    for handler in handlers.EVENT_HANDLERS:
        try:
            await handler(event)
        except Exception:
            logger.exception("Exception handling event %s", event)
