"""Built-in container task commands."""

from taskpilot.task.commands.context import (
    CHECK_CONTEXT_DEF,
    WRAP_CONTEXT_DEF,
    handle_check_context,
    handle_wrap_context,
)
from taskpilot.task.commands.files import EDIT_FILE_DEF, VIEW_FILE_DEF, handle_edit_file, handle_view_file
from taskpilot.task.commands.knowledge import (
    GAIN_KNOWLEDGE_DEF,
    KNOWLEDGE_BASE_DEF,
    QUERY_KNOWLEDGE_DEF,
    handle_gain_knowledge,
    handle_knowledge_base,
    handle_query_knowledge,
)
from taskpilot.task.commands.lifecycle import (
    COMPLETE_TASK_DEF,
    FAIL_TASK_DEF,
    handle_complete_task,
    handle_fail_task,
)
from taskpilot.task.commands.messaging import SEND_MESSAGE_DEF, handle_send_message
from taskpilot.task.commands.planning import (
    SET_EXECUTION_PLAN_DEF,
    UPDATE_EXECUTION_PLAN_DEF,
    handle_set_execution_plan,
    handle_update_execution_plan,
)
from taskpilot.task.commands.search import WEB_SEARCH_DEF, handle_web_search
from taskpilot.task.commands.secret import REQUEST_SECRET_DEF, handle_request_secret
from taskpilot.task.commands.shell import RUN_COMMAND_DEF, handle_run_command
from taskpilot.task.commands.transfer import (
    COPY_FROM_CONTAINER_DEF,
    COPY_TO_CONTAINER_DEF,
    handle_copy_from_container,
    handle_copy_to_container,
)
from taskpilot.task.registry import CommandRegistry

BUILTIN_COMMANDS = [
    (COMPLETE_TASK_DEF, handle_complete_task),
    (FAIL_TASK_DEF, handle_fail_task),
    (SEND_MESSAGE_DEF, handle_send_message),
    (RUN_COMMAND_DEF, handle_run_command),
    (VIEW_FILE_DEF, handle_view_file),
    (EDIT_FILE_DEF, handle_edit_file),
    (COPY_TO_CONTAINER_DEF, handle_copy_to_container),
    (COPY_FROM_CONTAINER_DEF, handle_copy_from_container),
    (REQUEST_SECRET_DEF, handle_request_secret),
    (SET_EXECUTION_PLAN_DEF, handle_set_execution_plan),
    (UPDATE_EXECUTION_PLAN_DEF, handle_update_execution_plan),
    (WRAP_CONTEXT_DEF, handle_wrap_context),
    (CHECK_CONTEXT_DEF, handle_check_context),
    (GAIN_KNOWLEDGE_DEF, handle_gain_knowledge),
    (QUERY_KNOWLEDGE_DEF, handle_query_knowledge),
    (KNOWLEDGE_BASE_DEF, handle_knowledge_base),
    (WEB_SEARCH_DEF, handle_web_search),
]


def default_command_registry() -> CommandRegistry:
    """Registry holding every built-in command."""
    registry = CommandRegistry()
    for definition, handler in BUILTIN_COMMANDS:
        registry.register(definition, handler)
    return registry


__all__ = ["BUILTIN_COMMANDS", "default_command_registry"]
