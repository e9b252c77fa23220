"""Copy-trading pipeline: monitor, sizing, filters, aggregation, replicator."""
