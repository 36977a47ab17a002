"""
Metric names, namespaces and object-key conventions shared by the scanner,
the canary and the operational API
"""

METRIC_NAMESPACE = "RegistryDiscovery"
CANARY_METRIC_NAMESPACE = "RegistryDiscovery/PackageCanary"


class MetricName:
    """Scanner metrics"""
    BATCH_PROCESSING_TIME = "BatchProcessingTime"
    CHANGE_COUNT = "ChangeCount"
    PACKAGE_VERSION_AGE = "PackageVersionAge"
    PACKAGE_VERSION_COUNT = "PackageVersionCount"
    RELEVANT_PACKAGE_VERSIONS = "RelevantPackageVersions"
    REMAINING_TIME = "RemainingTime"
    STAGING_FAILURE_COUNT = "StagingFailureCount"
    STAGING_TIME = "StagingTime"
    UNPROCESSABLE_ENTITY = "UnprocessableEntity"
    DEFERRED_VERSION_RETRIES = "DeferredVersionRetries"


class CanaryMetricName:
    """Package canary metrics"""
    DWELL_TIME = "DwellTime"
    TIME_TO_CATALOG = "TimeToCatalog"
    TRACKED_VERSION_COUNT = "TrackedVersionCount"
    NPM_REPLICA_LAG = "EstimatedNpmReplicaLag"


class ObjectKey:
    """Canary state objects live at STATE_PREFIX + package name + STATE_SUFFIX"""
    STATE_PREFIX = "package-canary/"
    STATE_SUFFIX = ".state.json"


def canary_state_key(package_name: str) -> str:
    return f"{ObjectKey.STATE_PREFIX}{package_name}{ObjectKey.STATE_SUFFIX}"


def staged_key(prefix: str, package_name: str, basename: str, version: str) -> str:
    """Deterministic staging key, so re-staging a version overwrites in place"""
    return f"{prefix}{package_name}/-/{basename}-{version}.tgz"
