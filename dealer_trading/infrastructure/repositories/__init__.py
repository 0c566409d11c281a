from dealer_trading.infrastructure.repositories.activity_repository import ActivityRepository
from dealer_trading.infrastructure.repositories.import_run_repository import ImportRunRepository
from dealer_trading.infrastructure.repositories.location_repository import LocationRepository
from dealer_trading.infrastructure.repositories.transfer_repository import TransferRepository
from dealer_trading.infrastructure.repositories.vehicle_repository import VehicleRepository

__all__ = [
    "ActivityRepository",
    "ImportRunRepository",
    "LocationRepository",
    "TransferRepository",
    "VehicleRepository",
]
