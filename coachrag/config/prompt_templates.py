"""
CoachRAG - Prompt Wording & Trace Defaults
===========================================
Centralised wording for prompt augmentation, the default user-query
variables, and the attributes/tags stamped on every trace.  The message
templates themselves live in the remote deployment; only the text this
application adds around them is kept here.

Exports
-------
DEFAULT_QUERY_VARIABLES, RETRIEVAL_QUERY_TEMPLATE, CONTEXT_HEADER,
SNIPPET_TEMPLATE, AUGMENTATION_INSTRUCTIONS,
TRACE_DEFAULT_ATTRIBUTES, TRACE_DEFAULT_TAGS.
"""

# ══════════════════════════════════════════════════════════════════════
#  DEFAULT QUERY VARIABLES
# ══════════════════════════════════════════════════════════════════════
# Injected into the deployed user template's {{PLACEHOLDERS}} when the
# caller supplies none.

DEFAULT_QUERY_VARIABLES: dict[str, str] = {
    "RUN_BLOCK": "1 hour Recovery run to get rid of soreness and stiffness.",
    "WHAT_TO_COVER": "pre-workout warm-up; hydration & electrolytes; cadence tips",
    "CONTEXT": "Training for a half-marathon in 6 weeks; cool 15°C weather; access to water every 3 km; previous ankle sprain, avoid uneven terrain.",
}


# ══════════════════════════════════════════════════════════════════════
#  RETRIEVAL QUERY
# ══════════════════════════════════════════════════════════════════════
# Retrieval embeds the *full* prompt so the context matches what is sent.

RETRIEVAL_QUERY_TEMPLATE: str = "{system}\n\nUser request:\n{user}"


# ══════════════════════════════════════════════════════════════════════
#  AUGMENTATION
# ══════════════════════════════════════════════════════════════════════

CONTEXT_HEADER: str = "\n\nContext from knowledge base (use only when relevant):\n"

SNIPPET_TEMPLATE: str = "--- snippet {index} ---\n{text}\n\n"

AUGMENTATION_INSTRUCTIONS: str = "\n\nInstructions: Use ONLY the requested sections from the template. Keep answers tight and metric. If pain or heat is a concern, add a short caution."

AUGMENTATION_COMPONENTS: list[str] = ["coach_template", "user_query", "retrieval_context", "instructions"]


# ══════════════════════════════════════════════════════════════════════
#  TRACE DEFAULTS
# ══════════════════════════════════════════════════════════════════════

TRACE_DEFAULT_ATTRIBUTES: dict[str, str] = {
    "runtime": "python",
    "language": "py",
}

TRACE_DEFAULT_TAGS: list[str] = ["running-coach", "rag", "pipeline"]
