"""claimflow: assessment stage-pipeline engine for vehicle-damage claims."""

__version__ = "0.3.0"
