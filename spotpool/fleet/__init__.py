"""Worker group state and the controller that changes it."""
