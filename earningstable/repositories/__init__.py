"""Table repositories: module-level async functions over ``get_session()``."""
