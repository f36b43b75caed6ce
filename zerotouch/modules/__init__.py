"""Bootstrap components: state, waits, retries, cluster and addon operations."""
