"""Prediction gateway and the remote model client."""

from .prediction_gateway import PredictionGateway
from .remote_model_client import RemoteModelClient

__all__ = ['PredictionGateway', 'RemoteModelClient']
