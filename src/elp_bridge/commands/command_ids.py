from __future__ import annotations

# Command identifiers registered with the host editor.
EXPAND_MACRO_COMMAND = "elp.expandMacro"
RESTART_SERVER_COMMAND = "elp.restartServer"
SHOW_OUTPUT_COMMAND = "elp.showOutput"

# Custom LSP requests the commands forward to the server.
EXPAND_MACRO_METHOD = "elp/expandMacro"

# Sorted by command-id text.
COMMAND_IDS: tuple[str, ...] = (
    EXPAND_MACRO_COMMAND,
    RESTART_SERVER_COMMAND,
    SHOW_OUTPUT_COMMAND,
)
