# Ampel notes: categories, stacks and color-coded notes kept in sync with a live store
#
# Components:
#   schema.py        - Data model (Category, Stack, Note, Color)
#   docstore.py      - SQLite document store with live queries and atomic batches
#   identity.py      - Identity provider (absent / guest / full principals)
#   subscriptions.py - One live query per logical slot
#   normalizer.py    - Snapshot documents -> typed, ordered entities
#   views.py         - Filtered and stack-grouped views (pure)
#   mutations.py     - Validated writes and cascading deletes
#   selection.py     - Remembered stack choice per category
#   ui_state.py      - Local edit-mode and menu flags
#   session.py       - Identity gate and live session state
#   config.py        - YAML configuration and logging setup
