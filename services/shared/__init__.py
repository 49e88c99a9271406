"""Models, errors and result types shared across packages."""
