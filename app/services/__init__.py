"""Service layer: billing domain services and payment provider adapters."""
