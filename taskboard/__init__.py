# Task board backend: boards, columns, tasks and subtasks over a document store
#
# Components:
#   schema.py     - Entity kinds, field declarations, document construction
#   store.py      - Entity store (abstract + SQLite JSON documents) and populate
#   saga.py       - Ordered steps with compensation for multi-document writes
#   integrity.py  - Referential integrity engine (cascades, links, moves)
#   api.py        - GraphQL schema and resolvers (ariadne)
#   config.py     - YAML + environment configuration
#   errors.py     - Exception types surfaced to API callers
