from tortoise import fields, models


class CrawlJob(models.Model):
    """
    One crawl of one domain: lifecycle status, progress counters and the
    registry of external link destinations discovered along the way.
    """
    id = fields.UUIDField(pk=True)

    domain = fields.CharField(max_length=255)
    project_id = fields.CharField(max_length=255, index=True)

    # pending / running / completed / failed
    status = fields.CharField(max_length=20, default="pending", index=True)

    started_at = fields.DatetimeField(null=True)
    completed_at = fields.DatetimeField(null=True)
    failed_at = fields.DatetimeField(null=True)
    last_activity_at = fields.DatetimeField(null=True)

    pages_discovered = fields.IntField(null=True)
    pages_crawled = fields.IntField(null=True)
    duplicates_skipped = fields.IntField(null=True)
    max_depth_reached = fields.IntField(null=True)

    stop_reason = fields.CharField(max_length=255, null=True)
    error_message = fields.TextField(null=True)

    # {target_url: {"occurrences": n, "referring_pages": [...]}}
    external_links = fields.JSONField(null=True)

    # Unvisited frontier saved when a run fails, restored on resume:
    # [{"url": ..., "normalized_url": ..., "depth": n}, ...]
    pending_frontier = fields.JSONField(null=True)

    class Meta:
        table = "crawl_jobs"

    def __str__(self):
        return f"{self.domain} [{self.status}]"
