"""Foundation - Core building blocks for toolbridge.

Contains: error taxonomy and normalization, configuration.
"""
