# Order board: customer-order tasks, per-task file areas, and the JSON metadata
# document that ties them together.
#
# Components:
#   schema.py     - Data model (Task, Column, BoardData) and the default column skeleton
#   errors.py     - Error taxonomy shared by the store, file area and operations
#   sanitizer.py  - Filename / relative path sanitization for uploads
#   store.py      - metadata.json persistence with a document lock
#   files.py      - Per-task directory operations and zip archive assembly
#   operations.py - Mutations that keep store and file area consistent
#   search.py     - AI-ranked natural-language search over task summaries
#   config.py     - YAML + environment settings
