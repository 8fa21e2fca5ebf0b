"""Message protocol constants: message types, command verbs and log kinds.

Pure data module -- no imports, no logic. Safe to import from any module
without risk of circular dependencies.
"""

# ── Message types (value of the ``type`` discriminator) ──────────────

MSG_COMMAND = "command"
MSG_LOG_ENTRY = "logEntry"
MSG_NEW_PROBLEM = "newProblem"
MSG_SET_CODE = "setCode"
MSG_SET_PREFS = "setPrefs"
MSG_TEST_RESULTS = "testResults"
MSG_VERSION = "version"

# ── Command verbs ─────────────────────────────────────────────────────

CMD_KEEP_ALIVE = "keepAlive"
CMD_RUN = "run"
CMD_SUBMIT = "submit"
CMD_QUIT = "quit"

# ── Log entry kinds ───────────────────────────────────────────────────

LOG_INFO = "info"
LOG_ERROR = "error"

# ── Key under which a single error/submission case is reported ───────

SINGLE_CASE_KEY = "0"
