# Ingestion pipeline: source, batching, planning, execution, dispatch
