"""
fit options for the K-pairwise trainer

the four options of the fitting procedure (learning rate, iterations,
samples per gradient estimate, Gibbs steps per iteration) plus the burn-in
policy and the PRNG seed. the number of parallel lanes is NOT an option here:
it comes from the execution environment (see utils.default_num_lanes)
"""
from dataclasses import dataclass, asdict, fields

from kpairwise.errors import ConfigurationError


# camelCase spellings accepted by FitOptions.from_dict
_ALIASES = {
    "learningRate": "learning_rate",
    "lr": "learning_rate",
    "iter": "iterations",
    "samplesPerGradientEstimate": "samples_per_gradient_estimate",
    "M_samples": "samples_per_gradient_estimate",
    "gibbsStepsPerIteration": "gibbs_steps_per_iteration",
    "gibbs_steps": "gibbs_steps_per_iteration",
    "burnInFactor": "burn_in_factor",
}


@dataclass(frozen=True)
class FitOptions:
    learning_rate: float = 0.05
    iterations: int = 200
    samples_per_gradient_estimate: int = 1000
    gibbs_steps_per_iteration: int = 10
    burn_in_factor: int = 10    # burn-in = burn_in_factor * gibbs_steps_per_iteration
    seed: int = 42

    def __post_init__(self):
        if self.iterations < 0:
            raise ConfigurationError(f"iterations must be >= 0, got {self.iterations}")
        if self.samples_per_gradient_estimate < 1:
            raise ConfigurationError(
                f"samples_per_gradient_estimate must be >= 1, got {self.samples_per_gradient_estimate}"
            )
        if self.gibbs_steps_per_iteration < 0:
            raise ConfigurationError(
                f"gibbs_steps_per_iteration must be >= 0, got {self.gibbs_steps_per_iteration}"
            )
        if self.burn_in_factor < 10:
            raise ConfigurationError(f"burn_in_factor must be >= 10, got {self.burn_in_factor}")

    @property
    def burn_in_steps(self) -> int:
        return self.burn_in_factor * self.gibbs_steps_per_iteration

    @classmethod
    def from_dict(cls, options: dict) -> "FitOptions":
        """build options from a dict, accepting snake_case or camelCase keys"""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in options.items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise ConfigurationError(f"unrecognized fit option: {key!r}")
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return asdict(self)
