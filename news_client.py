"""
NewsDesk Client - Print Headlines
Fetches a category through NewsService directly, without starting the HTTP server.

Usage:
    python news_client.py                          # home, 10 most recent
    python news_client.py tech --limit 5 --sort relevant
    python news_client.py world --json             # raw JSON output
"""
import argparse
import json
import logging
import sys

from newsdesk import (
    NewsService,
    NewsError,
    CATEGORIES,
    DEFAULT_CATEGORY,
    SORT_RECENT,
    SORT_RELEVANT,
    clamp_limit,
    sort_articles,
    public_article,
)


def print_article(article, index):
    """Pretty print a single article."""
    print(f"\n{'='*80}")
    print(f"Article #{index}")
    print(f"{'='*80}")
    print(f"Title:        {article.get('title', 'N/A')}")
    print(f"URL:          {article.get('url') or 'N/A'}")
    print(f"Published:    {article.get('publishedAt', 'N/A')}")
    print(f"Source:       {article.get('source', 'N/A')}")
    print(f"Relevance:    {article.get('relevance', 'N/A')}")

    summary = article.get('summary', '')
    if summary:
        summary_preview = summary[:150] + "..." if len(summary) > 150 else summary
        print(f"Summary:      {summary_preview}")

    author = article.get('author')
    if author:
        print(f"Author:       {author}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print headlines for a category")
    parser.add_argument("category", nargs="?", default=DEFAULT_CATEGORY,
                        choices=sorted(CATEGORIES), help="News category")
    parser.add_argument("--limit", default=10, help="Number of articles (max 50)")
    parser.add_argument("--sort", default=SORT_RECENT, choices=[SORT_RECENT, SORT_RELEVANT])
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")
    parser.add_argument("--verbose", action="store_true", help="Show pipeline logs")
    return parser


def main(argv=None, service=None):
    """Main entry point for the headline printer."""
    args = build_parser().parse_args(argv)

    if not args.verbose:
        logging.getLogger('newsdesk').setLevel(logging.WARNING)

    service = service or NewsService()

    try:
        result = service.get_news(args.category, clamp_limit(args.limit))
    except NewsError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    articles = [public_article(a) for a in sort_articles(result.articles, args.sort)]

    if args.json:
        print(json.dumps({
            "category": args.category,
            "total": len(articles),
            "cached": result.cached,
            "data": articles,
        }, ensure_ascii=False, indent=2))
        return 0

    print("\n" + "="*80)
    print(f" NewsDesk - {args.category} ".center(80, "="))
    print("="*80)
    print(f"\n{len(articles)} articles ({'cached' if result.cached else 'fresh'}, "
          f"{service.usage.summary()})")

    for i, article in enumerate(articles, 1):
        print_article(article, i)

    print("\n" + "="*80 + "\n")
    return 0


if __name__ == '__main__':
    sys.exit(main())
