"""
db/ - Database Layer
====================
Handles the PostgreSQL connection context, the Schema Registry rebuilt from
`migrations/`, row mapping and drift detection.
This layer depends only on `models/` for the domain objects it maps to.
"""
