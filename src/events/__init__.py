"""Event log: payload models, store, push feeds and the detached writer."""
