"""
Blogsmith Article Generation Service

Multi-provider AI blog pipeline: research, outline, section-by-section
writing, SEO scoring, image placement, CTA injection, and WordPress
publishing, streamed to the client as Server-Sent Events.

Usage:
    from blogsmith.pipeline import ArticlePipeline
    from blogsmith.config import ProviderCredentials

    pipeline = ArticlePipeline(ProviderCredentials.from_env())
    async for event in pipeline.run(request):
        ...
"""

__version__ = "1.0.0"
