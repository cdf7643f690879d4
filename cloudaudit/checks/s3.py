"""S3 bucket checks."""
from botocore.exceptions import ClientError

from cloudaudit.services.check_catalog import register_check
from cloudaudit.services.check_runner import error_code

PUBLIC_GRANTEES = (
    "http://acs.amazonaws.com/groups/global/AllUsers",
    "http://acs.amazonaws.com/groups/global/AuthenticatedUsers",
)
BLOCK_FLAGS = ("BlockPublicAcls", "IgnorePublicAcls", "BlockPublicPolicy", "RestrictPublicBuckets")


@register_check
class BucketPublicAccessCheck:
    """Buckets without a complete public access block, or with public ACL grants."""
    check_id = "bucket-public-access"
    service = "S3"

    def run(self, context):
        s3 = context.client("s3")
        buckets = context.call(s3.list_buckets).get("Buckets", [])

        for bucket in buckets:
            name = bucket["Name"]
            context.accumulator.increment_resources()

            try:
                config = context.call(s3.get_public_access_block, Bucket=name)
                block = config.get("PublicAccessBlockConfiguration", {})
                if not all(block.get(flag) for flag in BLOCK_FLAGS):
                    context.accumulator.add_finding(
                        resource_id=name,
                        resource_type="S3Bucket",
                        issue="Public access block is only partially enabled",
                        recommendation="Enable all four public access block settings",
                    )
            except ClientError as e:
                if error_code(e) != "NoSuchPublicAccessBlockConfiguration":
                    raise
                context.accumulator.add_finding(
                    resource_id=name,
                    resource_type="S3Bucket",
                    issue="Public access block is not configured",
                    recommendation="Enable the bucket's public access block",
                )

            acl = context.call(s3.get_bucket_acl, Bucket=name)
            for grant in acl.get("Grants", []):
                if grant.get("Grantee", {}).get("URI") in PUBLIC_GRANTEES:
                    context.accumulator.add_finding(
                        resource_id=name,
                        resource_type="S3Bucket",
                        issue=f"Bucket ACL grants {grant.get('Permission')} to a public group",
                        recommendation="Remove public grants from the bucket ACL",
                    )
