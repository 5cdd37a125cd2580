"""Constants for the OCLoop iteration harness.

This module defines the configuration constants used throughout OCLoop,
including default file names, server settings, reconnection policy and
attached-session terminal settings.

OCLoop drives an opencode server through repeated iterations: each iteration
creates a session, sends the loop prompt and waits for the session to go idle,
while a local plan document tracks overall progress.
"""

import os
from pathlib import Path

# =============================================================================
# Plan and Prompt Files
# =============================================================================
# Task list the harness measures progress against
DEFAULT_PLAN_FILE = "PLAN.md"

# Prompt template sent to every new session
DEFAULT_PROMPT_FILE = ".loop-prompt.md"

# Placeholder in the prompt template replaced with the active plan path
PLAN_FILE_PLACEHOLDER = "{{PLAN_FILE}}"

# Completion sentinel: <plan-complete>summary</plan-complete>
PLAN_COMPLETE_TAG = "plan-complete"
DEFAULT_COMPLETION_MESSAGE = "Plan marked as complete."

# =============================================================================
# Server Configuration
# =============================================================================
# The opencode executable used for `serve` and `attach`
OPENCODE_COMMAND = "opencode"

SERVER_HOSTNAME = "127.0.0.1"
SERVER_PORT = 4096

# Seconds to wait for "opencode server listening on ..." after spawning
SERVER_STARTUP_TIMEOUT = 10.0

# Timeout for regular (non-streaming) API calls, in seconds
API_TIMEOUT = 30.0

# =============================================================================
# Event Stream Configuration
# =============================================================================
# Reconnect delay is min(BASE * 2^attempts, MAX) milliseconds
RECONNECT_BASE_DELAY_MS = 1000
RECONNECT_MAX_DELAY_MS = 30000

# Maximum length of individual string values in logged event payloads
MAX_LOG_VALUE_LENGTH = 200

# =============================================================================
# Attached Session Configuration
# =============================================================================
ATTACH_TERM = "xterm-256color"
ATTACH_COLORTERM = "truecolor"
DEFAULT_COLS = 120
DEFAULT_ROWS = 40

# Ctrl+\ toggles between attached and detached interaction
ATTACH_TOGGLE_KEY = "\x1c"

# =============================================================================
# Activity Log
# =============================================================================
# Oldest activity events are dropped beyond this many entries
ACTIVITY_LOG_MAX_EVENTS = 100

# =============================================================================
# Project Files
# =============================================================================
LOG_FILE = ".loop.log"

# Added to .gitignore so harness artifacts are never committed
GITIGNORE_ENTRY = ".loop*"

# =============================================================================
# User Configuration
# =============================================================================
# $XDG_CONFIG_HOME/ocloop/ocloop.json, falling back to ~/.config/ocloop
CONFIG_DIR = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config") / "ocloop"
CONFIG_FILE = CONFIG_DIR / "ocloop.json"
