"""
Configuration Validator

Cross-field checks on an EngineConfig: naming, references, per-variant
connection rules and register ranges.
"""

from collections import Counter

from fieldpoll.common.config import EngineConfig, SourceType
from fieldpoll.common.logging_setup import get_service_logger

logger = get_service_logger("config.validator")

# Highest register address + 1
REGISTER_SPACE = 0x10000


class ConfigValidator:
    """Validates engine configuration"""

    def validate(self, config: EngineConfig) -> tuple[bool, list[str]]:
        """
        Validate configuration.

        Args:
            config: Parsed engine configuration

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        errors: list[str] = []

        errors.extend(self._validate_sources(config))
        errors.extend(self._validate_variables(config))
        self._warn_timing(config)

        is_valid = len(errors) == 0

        if not is_valid:
            logger.warning(
                f"Config validation failed: {len(errors)} errors",
                extra={"errors": errors},
            )
        else:
            logger.debug("Config validation passed")

        return is_valid, errors

    def _validate_sources(self, config: EngineConfig) -> list[str]:
        """Validate source definitions"""
        errors = []

        if not config.sources:
            errors.append("No sources configured")
            return errors

        counts = Counter(s.name for s in config.sources)
        for name, count in counts.items():
            if count > 1:
                errors.append(f"Duplicate source name: {name}")

        for source in config.sources:
            errors.extend(source.validate())

        # RTU sources on one port share the line, so settings must agree and
        # unit ids must differ
        ports: dict[str, tuple] = {}
        units: dict[tuple[str, int], str] = {}
        for source in config.sources:
            if source.type != SourceType.RTU:
                continue
            s = source.settings
            line = (s.baud_rate, s.data_bits, s.parity, s.stop_bits)
            previous = ports.setdefault(s.device, line)
            if previous != line:
                errors.append(
                    f"source {source.name!r}: serial settings for {s.device} "
                    f"conflict with another source"
                )
            owner = units.setdefault((s.device, s.unit_id), source.name)
            if owner != source.name:
                errors.append(
                    f"source {source.name!r}: unitId {s.unit_id} on {s.device} "
                    f"is already used by {owner!r}"
                )

        return errors

    def _validate_variables(self, config: EngineConfig) -> list[str]:
        """Validate variable definitions"""
        errors = []
        known_sources = {s.name for s in config.sources}

        counts = Counter((v.source, v.name) for v in config.variables)
        for (source, name), count in counts.items():
            if count > 1:
                errors.append(f"Duplicate variable {name!r} in source {source!r}")

        for variable in config.variables:
            if variable.source not in known_sources:
                errors.append(
                    f"variable {variable.name!r} references unknown source {variable.source!r}"
                )
            if variable.address < 0:
                errors.append(f"variable {variable.name!r}: address must be non-negative")
            elif variable.end_address > REGISTER_SPACE:
                errors.append(
                    f"variable {variable.name!r}: {variable.data_type.value} at "
                    f"{variable.address} runs past register 65535"
                )

        for source in config.sources:
            if not config.variables_for(source.name):
                logger.warning(f"Source {source.name!r} has no variables")

        return errors

    def _warn_timing(self, config: EngineConfig) -> None:
        """A timeout at or above the poll interval makes ticks overlap"""
        for source in config.sources:
            if source.timeout >= source.poll_interval:
                logger.warning(
                    f"Source {source.name!r}: timeout {source.timeout}s >= "
                    f"pollInterval {source.poll_interval}s, slow polls will skip ticks"
                )
