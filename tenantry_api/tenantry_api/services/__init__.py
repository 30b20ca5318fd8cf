"""Service layer for the tenantry control plane."""
