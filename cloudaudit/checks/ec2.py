"""EC2 security group checks."""
from cloudaudit.services.check_catalog import register_check

DANGEROUS_PORTS = {
    21: "FTP",
    22: "SSH",
    23: "Telnet",
    1433: "SQL Server",
    3306: "MySQL",
    3389: "RDP",
    5432: "PostgreSQL",
    6379: "Redis",
    9200: "Elasticsearch",
    27017: "MongoDB",
}

# Ranges wider than this are reported even without a known service in them
MAX_OPEN_RANGE = 100


def _open_to_world(permission) -> bool:
    if any(r.get("CidrIp") == "0.0.0.0/0" for r in permission.get("IpRanges", [])):
        return True
    return any(r.get("CidrIpv6") == "::/0" for r in permission.get("Ipv6Ranges", []))


def _issues_for_permission(permission):
    if not _open_to_world(permission):
        return []
    if permission.get("IpProtocol") == "-1":
        return ["All traffic is open to the internet"]

    from_port = permission.get("FromPort")
    to_port = permission.get("ToPort")
    if from_port is None or to_port is None:
        return []

    issues = []
    for port, service in sorted(DANGEROUS_PORTS.items()):
        if from_port <= port <= to_port:
            issues.append(f"{service} port {port} is open to the internet")
    if not issues and to_port - from_port + 1 > MAX_OPEN_RANGE:
        issues.append(f"Port range {from_port}-{to_port} is open to the internet")
    return issues


@register_check
class DangerousPortsCheck:
    """Security groups allowing internet ingress to administrative or database ports."""
    check_id = "dangerous-ports"
    service = "EC2"

    def run(self, context):
        region = context.scope[0] if context.scope else None
        ec2 = context.client("ec2", region_name=region)
        paginator = ec2.get_paginator("describe_security_groups")
        pages = context.call(lambda: list(paginator.paginate()))

        for page in pages:
            for group in page.get("SecurityGroups", []):
                context.accumulator.increment_resources()
                for permission in group.get("IpPermissions", []):
                    for issue in _issues_for_permission(permission):
                        context.accumulator.add_finding(
                            resource_id=group["GroupId"],
                            resource_type="SecurityGroup",
                            issue=issue,
                            recommendation="Restrict the ingress rule to known source ranges",
                        )
