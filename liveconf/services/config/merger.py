"""
Configuration Merger

Combines the latest local and cloud snapshots into one MergedConfig.

Each field has exactly one source:

    LocalConfig  -> role, addresses, instance id, profiling, UI address,
                    auto-report/launch, cloud-config URL/CA, stats,
                    server section, client flags
    CloudConfig  -> fronted servers, chained servers, masquerade sets,
                    proxied sites, trusted CAs
"""

import copy

from liveconf.common.config import CloudConfig, LocalConfig, MergedConfig


def merge(local: LocalConfig, cloud: CloudConfig) -> MergedConfig:
    """
    Build the merged snapshot.

    Pure: inputs are deep-copied, never mutated, and equal inputs always
    produce equal outputs.
    """
    local = copy.deepcopy(local)
    cloud = copy.deepcopy(cloud)

    return MergedConfig(
        role=local.role,
        addr=local.addr,
        instance_id=local.instance_id,
        cloud_config=local.cloud_config,
        cloud_config_ca=local.cloud_config_ca,
        cpu_profile=local.cpu_profile,
        mem_profile=local.mem_profile,
        ui_addr=local.ui_addr,
        auto_report=local.auto_report,
        auto_launch=local.auto_launch,
        stats=local.stats,
        server=local.server,
        client=local.client,
        fronted_servers=cloud.fronted_servers,
        chained_servers=cloud.chained_servers,
        masquerade_sets=cloud.masquerade_sets,
        proxied_sites=cloud.proxied_sites,
        trusted_cas=cloud.trusted_cas,
    )
