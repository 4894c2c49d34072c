from tortoise import fields, models


class Page(models.Model):
    """
    A crawled page, identified within its job by the canonical URL.
    """
    id = fields.IntField(pk=True)

    crawl_job = fields.ForeignKeyField(
        "models.CrawlJob",
        related_name="pages",
        on_delete=fields.CASCADE,
    )

    normalized_url = fields.CharField(max_length=2048)
    # first resolved URL, after redirects
    url = fields.CharField(max_length=2048)

    status_code = fields.IntField(null=True)
    title = fields.TextField(null=True)
    h1 = fields.TextField(null=True)
    meta_description = fields.TextField(null=True)
    canonical = fields.CharField(max_length=2048, null=True)
    depth = fields.IntField(default=0)

    internal_links_out = fields.IntField(default=0)
    external_links_out = fields.IntField(default=0)
    internal_links_in = fields.IntField(default=0)
    external_links_in = fields.IntField(default=0)

    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "pages"
        unique_together = (("crawl_job", "normalized_url"),)

    def __str__(self):
        return f"{self.normalized_url} [{self.status_code}]"
