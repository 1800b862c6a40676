# File: vpcmido/metrics.py

from prometheus_client import Counter, Gauge, Histogram

METRICS = {
    "vpcs_total": Gauge("vpcmido_vpcs_total", "VPCs present in the backend after the last run"),
    "subnets_total": Gauge("vpcmido_subnets_total", "Subnets present in the backend after the last run"),
    "instances_total": Gauge("vpcmido_instances_total", "Instance interfaces present after the last run"),
    "nat_gateways_total": Gauge("vpcmido_nat_gateways_total", "NAT gateways present after the last run"),
    "security_groups_total": Gauge("vpcmido_security_groups_total", "Security groups present after the last run"),
    "router_ids_in_use": Gauge("vpcmido_router_ids_in_use", "Router IDs reserved in the pool"),
    "reconciliation_latency": Histogram(
        "vpcmido_reconciliation_duration_ms",
        "Time taken for a reconciliation run in milliseconds",
        buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
    ),
    "reconciliation_runs": Counter(
        "vpcmido_reconciliation_runs_total",
        "Reconciliation runs by outcome",
        ["status"],
    ),
    "entity_failures": Counter(
        "vpcmido_entity_failures_total",
        "Entities left unconverged by a run",
        ["kind"],
    ),
    "backend_calls": Counter(
        "vpcmido_backend_calls_total",
        "Backend API calls by operation",
        ["operation"],
    ),
    "cleanup_deletions": Counter(
        "vpcmido_cleanup_deletions_total",
        "Duplicate or orphan objects removed by cleanup",
        ["reason"],
    ),
    "api_requests": Counter(
        "vpcmido_api_requests_total",
        "Admin REST API requests",
        ["method", "endpoint"],
    ),
}
