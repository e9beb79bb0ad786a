"""HTTP clients for the Prediction Service and for batch progress."""
