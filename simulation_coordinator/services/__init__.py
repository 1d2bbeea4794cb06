"""Service layer: cluster provisioning, devices and streaming bridges."""
