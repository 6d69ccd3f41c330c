"""API-specific request/response models.

Domain models (RentalTransaction, UserProfile, etc.) are in rentals.models.
This package holds the HTTP request bodies and response schemas only.

Modules:
- rentals: Rental transition request bodies and responses
- access: Access gate status response
"""

__all__: list[str] = []
