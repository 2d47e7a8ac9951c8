"""Models for the external handlers."""

from pydantic import AnyHttpUrl, BaseModel, Field
from safir.metadata import Metadata as SafirMetadata

__all__ = ["Index", "WebhookReceipt"]


class Index(BaseModel):
    """Metadata returned by the external root URL of the application."""

    metadata: SafirMetadata = Field(..., title="Package metadata")

    v1_api_base: AnyHttpUrl = Field(..., title="Base URL for the v1 REST API")

    api_docs: AnyHttpUrl = Field(..., title="API documentation URL")


class WebhookReceipt(BaseModel):
    """Acknowledgement of a GitHub webhook delivery."""

    delivery_id: str | None = Field(
        None, title="The X-GitHub-Delivery header of the delivery"
    )

    event: str | None = Field(None, title="The X-GitHub-Event header")

    accepted: bool = Field(
        ...,
        title="Accepted",
        description=(
            "Whether the delivery was queued for processing. Deliveries "
            "that are ignored or cannot be decoded are still acknowledged."
        ),
    )

    detail: str = Field(..., title="What happened to the delivery")

    job_id: str | None = Field(
        None, title="ID of the queued processing job, if accepted"
    )
