"""E2E Admin CLI (`e2e-admin`)."""
