"""IAM account checks."""
from cloudaudit.services.check_catalog import register_check


@register_check
class RootAccessKeyCheck:
    check_id = "root-access-key"
    service = "IAM"

    def run(self, context):
        iam = context.client("iam")
        summary = context.call(iam.get_account_summary).get("SummaryMap", {})
        context.accumulator.increment_resources()
        if summary.get("AccountAccessKeysPresent", 0):
            context.accumulator.add_finding(
                resource_id="root",
                resource_type="IAMRootUser",
                issue="The root user has active access keys",
                recommendation="Delete the root access keys and use IAM roles instead",
            )
        if not summary.get("AccountMFAEnabled", 0):
            context.accumulator.add_finding(
                resource_id="root",
                resource_type="IAMRootUser",
                issue="MFA is not enabled for the root user",
                recommendation="Enable MFA on the root user",
            )
