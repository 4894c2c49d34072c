from tortoise import fields, models


class ExtractionJob(models.Model):
    """
    Batch content extraction run over the pages of one crawl job.
    """
    id = fields.UUIDField(pk=True)

    crawl_job_id = fields.UUIDField(index=True)
    status = fields.CharField(max_length=20, default="pending", index=True)
    only_missing = fields.BooleanField(default=True)

    started_at = fields.DatetimeField(null=True)
    completed_at = fields.DatetimeField(null=True)
    failed_at = fields.DatetimeField(null=True)
    last_activity_at = fields.DatetimeField(null=True)

    pages_total = fields.IntField(null=True)
    pages_extracted = fields.IntField(null=True)
    pages_failed = fields.IntField(null=True)
    pages_skipped = fields.IntField(null=True)
    pages_in_database = fields.IntField(null=True)

    # [{"url": ..., "error": ...}]
    failed_urls = fields.JSONField(null=True)
    error_message = fields.TextField(null=True)

    class Meta:
        table = "content_extraction_jobs"
