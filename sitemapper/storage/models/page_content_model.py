from tortoise import fields, models


class PageContent(models.Model):
    """
    Structured content extracted from a crawled page.
    """
    id = fields.IntField(pk=True)

    crawl_job_id = fields.UUIDField(index=True)
    normalized_url = fields.CharField(max_length=2048)

    clean_text = fields.TextField(null=True)
    headings = fields.JSONField(null=True)
    seo = fields.JSONField(null=True)
    # raw JSON-LD blocks: {"json_ld": [...]}, stored in the "schema" column
    structured_data = fields.JSONField(null=True, source_field="schema")
    raw_html = fields.TextField(null=True)

    fetched_at = fields.DatetimeField(null=True)
    content_schema_version = fields.IntField(default=1)

    class Meta:
        table = "page_content"
        unique_together = (("crawl_job_id", "normalized_url"),)
