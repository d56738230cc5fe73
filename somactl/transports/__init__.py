"""Native adapter interface and backends."""
