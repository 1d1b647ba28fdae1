"""Task lifecycle engine: store, graph, retry policy, lifecycle, heartbeats and scheduling."""
