"""Row storage backends."""
