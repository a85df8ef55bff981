"""mileage_guard -- odometer fraud detection and ledger anchoring.

Ingests OBD device readings, groups them into trip batches, validates
each reading against the vehicle's trusted mileage history, and anchors
validated trip summaries to an external ledger with durable retry.
"""

__version__ = "0.1.0"
