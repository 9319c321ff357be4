"""Signal plugins, discovered by exposure_guard.load_plugins()."""
