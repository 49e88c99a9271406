"""Storage layer for DocSage: document store, embedding clients and vector index."""
