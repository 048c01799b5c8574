"""tensorbench — benchmark a tensor library across versions, backends and dtypes."""

__version__ = "0.3.0"
