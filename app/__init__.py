# ============================================================================
# Fiat Bridge v1.0.0
# Application Package - Exchange, Database, Observability, Schemas
# ============================================================================
