"""Feature extraction from order book state."""

from .feature_extractor import FEATURE_LEVELS, FeatureVector, extract_features, features_from_snapshot

__all__ = ['FEATURE_LEVELS', 'FeatureVector', 'extract_features', 'features_from_snapshot']
