"""errors raised before any sampling starts (bad shapes, bad data, bad options)"""


class ShapeMismatchError(ValueError):
    """J0 is not n x n, VK0 is not length n+1, or data is not a 2-D matrix"""


class NonBinaryDataError(ValueError):
    """data contains entries other than 0 and 1"""


class ConfigurationError(ValueError):
    """fit options or lane count that the trainer cannot run with"""
