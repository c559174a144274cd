"""Default canvas collaborators: tile evaluation, projection, event lookup."""
