"""HTTP API for the forest worker, embedding and thumbnail services."""
