"""
Build a small sentiment model archive for local runs and demos.

Fits a TF-IDF + logistic regression pipeline and writes it as a model
archive the serving API can load.

Usage:
    python scripts/build_model.py
    python scripts/build_model.py --data reviews.csv --output models/sentiment_model.zip

The optional CSV needs a header with ``SentimentText`` and ``Sentiment``
columns (Sentiment is 1/0 or true/false).
"""

import argparse
import csv
import os

from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline

from sentiment_serving.serving.engine import write_model_archive

DEFAULT_OUTPUT = "models/sentiment_model.zip"

SAMPLE_REVIEWS = [
    ("This was a great movie", True),
    ("I loved every minute of it", True),
    ("Wonderful acting and a beautiful story", True),
    ("An excellent, moving film", True),
    ("Fantastic soundtrack and great pacing", True),
    ("One of the best films I have seen this year", True),
    ("Brilliant, funny and warm", True),
    ("I really enjoyed this, highly recommended", True),
    ("This was a terrible movie", False),
    ("I hated every minute of it", False),
    ("Awful acting and a boring story", False),
    ("A dull, lifeless film", False),
    ("The worst soundtrack and painful pacing", False),
    ("One of the worst films I have seen this year", False),
    ("Bad, tedious and cold", False),
    ("I regret watching this, avoid it", False),
]


def load_reviews(path):
    """Read (text, label) pairs from a CSV file."""
    reviews = []
    with open(path, newline="", encoding="utf-8") as fh:
        for row in csv.DictReader(fh):
            label = row["Sentiment"].strip().lower() in ("1", "true", "yes", "positive")
            reviews.append((row["SentimentText"], label))
    return reviews


def build_pipeline():
    return Pipeline([
        ("tfidf", TfidfVectorizer(ngram_range=(1, 2), sublinear_tf=True)),
        ("clf", LogisticRegression(C=10.0, max_iter=1000)),
    ])


def train(reviews):
    """Fit a fresh pipeline on (text, label) pairs."""
    texts = [text for text, _ in reviews]
    labels = [label for _, label in reviews]
    return build_pipeline().fit(texts, labels)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Build a sentiment model archive")
    parser.add_argument("--data", help="CSV with SentimentText,Sentiment columns")
    parser.add_argument("--output", default=DEFAULT_OUTPUT, help="Archive path to write")
    args = parser.parse_args(argv)

    reviews = load_reviews(args.data) if args.data else SAMPLE_REVIEWS

    print(f"Training on {len(reviews)} reviews...")
    pipeline = train(reviews)

    os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
    write_model_archive(pipeline, args.output)

    print(f"  Saved to: {args.output}")
    print(f"  Size: {os.path.getsize(args.output) / 1024:.1f} KB")
    print()
    print("Serve it with:")
    print(f"  MODEL_URI={args.output} sentiment-serving")
    print("Test with:")
    print('  curl -X POST localhost:8000/predict -H "Content-Type: application/json" \\')
    print('    -d \'{"SentimentText": "This was a great movie"}\'')


if __name__ == "__main__":
    main()
