"""AnytimeBot scheduling backend."""
