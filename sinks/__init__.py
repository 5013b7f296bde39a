"""Delivery sinks: DuckDB tables, Parquet datasets and Kafka topics."""
