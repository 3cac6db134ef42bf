"""
Configuration Validator

Validates local and cloud configuration before it is published.
"""

from urllib.parse import urlparse

from liveconf.common.config import CloudConfig, LocalConfig, Role
from liveconf.common.logging_setup import get_service_logger

logger = get_service_logger("config.validator")


PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
PEM_END = "-----END CERTIFICATE-----"


class ConfigValidator:
    """Validates local and cloud configuration"""

    def validate_local(self, config: LocalConfig) -> tuple[bool, list[str]]:
        """
        Validate a local configuration.

        Args:
            config: Local configuration with defaults applied

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        errors: list[str] = []

        if config.role not in (Role.CLIENT, Role.SERVER):
            errors.append(f"Unknown role: {config.role}")

        errors.extend(self._validate_host_port("addr", config.addr))
        errors.extend(self._validate_host_port("uiaddr", config.ui_addr))

        url = urlparse(config.cloud_config)
        if url.scheme not in ("http", "https") or not url.netloc:
            errors.append(f"cloudconfig must be an http(s) URL: {config.cloud_config!r}")

        if config.cloud_config_ca and PEM_BEGIN not in config.cloud_config_ca:
            errors.append("cloudconfigca is not a PEM certificate")

        if config.stats.reporting_period_s <= 0:
            errors.append("stats.reportingperiod must be positive")

        return self._result("local", errors)

    def validate_cloud(self, config: CloudConfig) -> tuple[bool, list[str]]:
        """
        Validate a decoded cloud configuration.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        errors: list[str] = []

        for server in config.fronted_servers:
            if not 1 <= server.port <= 65535:
                errors.append(f"{server.host}: invalid port {server.port}")
            if server.masquerade_set and server.masquerade_set not in config.masquerade_sets:
                errors.append(
                    f"{server.host}: unknown masquerade set {server.masquerade_set!r}"
                )

        for name, chained in config.chained_servers.items():
            errors.extend(self._validate_host_port(f"chainedservers.{name}", chained.addr))

        for ca in config.trusted_cas:
            if PEM_BEGIN not in ca.cert or PEM_END not in ca.cert:
                errors.append(f"trusted CA {ca.common_name or '?'}: cert is not PEM-encoded")

        return self._result("cloud", errors)

    def _validate_host_port(self, name: str, value: str) -> list[str]:
        _, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            return [f"{name} must be host:port, got {value!r}"]
        if not 1 <= int(port) <= 65535:
            return [f"{name}: invalid port number {port}"]
        return []

    def _result(self, kind: str, errors: list[str]) -> tuple[bool, list[str]]:
        is_valid = len(errors) == 0

        if not is_valid:
            logger.warning(
                f"{kind.capitalize()} config validation failed: {len(errors)} errors",
                extra={"errors": errors},
            )
        else:
            logger.debug(f"{kind.capitalize()} config validation passed")

        return is_valid, errors
