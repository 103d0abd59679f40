"""HTTP layer of the AI gateway."""
