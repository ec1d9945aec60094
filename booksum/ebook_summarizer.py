# -*- coding: utf-8 -*-

import argparse
import asyncio
import html
import logging
import os
import sys
from datetime import date

from ebooklib import epub
from tqdm import tqdm

from booksum import config
from booksum.document_parser import SUPPORTED_EXTENSIONS, file_extension
from booksum.errors import BackupFormatError, ErrorKind
from booksum.llm_client import OpenAICompatibleTransform, create_transform
from booksum.log_sink import ConsoleLogSink
from booksum.progress_estimator import format_time
from booksum.run_history import RunRecorder
from booksum.summary_pipeline import summarize_file

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def format_summary_as_html(summary_text, title="Summary"):
    """Converts the Markdown-ish summary into simple HTML for the EPUB."""
    parts = [f"<h1>{html.escape(title)}</h1>"]
    for line in summary_text.strip().split('\n'):
        line = line.strip()
        if not line:
            continue
        if line.startswith('#'):
            level = min(len(line) - len(line.lstrip('#')) + 1, 6)
            parts.append(f"<h{level}>{html.escape(line.lstrip('#').strip())}</h{level}>")
        else:
            parts.append(f"<p>{html.escape(line)}</p>")
    return "".join(parts)


def copy_metadata(original_book, summarized_book):
    """Copies metadata from the original to the new e-book."""
    if original_book.get_metadata('DC', 'identifier'):
        summarized_book.set_identifier(original_book.get_metadata('DC', 'identifier')[0][0])
    if original_book.get_metadata('DC', 'title'):
        summarized_book.set_title(f"Summary of {original_book.get_metadata('DC', 'title')[0][0]}")
    if original_book.get_metadata('DC', 'language'):
        summarized_book.set_language(original_book.get_metadata('DC', 'language')[0][0])
    if original_book.get_metadata('DC', 'creator'):
        for author in original_book.get_metadata('DC', 'creator'):
            summarized_book.add_author(author[0])


def write_summary_epub(summary_text, output_path, source_path):
    """Writes the summary as a one-chapter EPUB. Metadata is taken from the source when it is an EPUB."""
    summarized_book = epub.EpubBook()
    if file_extension(source_path) == ".epub":
        copy_metadata(epub.read_epub(source_path, {"ignore_ncx": True}), summarized_book)

    # set_title/set_language append rather than replace, so only fill gaps.
    base_name = os.path.splitext(os.path.basename(source_path))[0]
    if not summarized_book.get_metadata('DC', 'identifier'):
        summarized_book.set_identifier(f"booksum-{base_name}")
    if not summarized_book.get_metadata('DC', 'title'):
        summarized_book.set_title(f"Summary of {base_name}")
    if not summarized_book.get_metadata('DC', 'language'):
        summarized_book.set_language('en')

    chapter = epub.EpubHtml(title="Summary", file_name="summary.xhtml", lang='en')
    chapter.content = format_summary_as_html(summary_text, summarized_book.title)
    summarized_book.add_item(chapter)
    summarized_book.toc = [epub.Link(chapter.file_name, chapter.title, uid="summary")]
    summarized_book.spine = ['nav', chapter]
    summarized_book.add_item(epub.EpubNcx())
    summarized_book.add_item(epub.EpubNav())
    epub.write_epub(output_path, summarized_book, {})


def write_markdown(summary_text, output_path):
    with open(output_path, 'w', encoding='utf-8') as f:
        f.write(summary_text)


class ProgressBar:
    """Feeds pipeline snapshots into a tqdm bar (0-100%)."""

    def __init__(self):
        self.bar = tqdm(total=100, desc="Summarizing", unit="%")

    def __call__(self, snapshot):
        self.bar.update(snapshot.progress - self.bar.n)
        remaining = "--:--" if snapshot.remaining_seconds is None else format_time(snapshot.remaining_seconds)
        self.bar.set_postfix_str(f"{snapshot.state.value} | left {remaining} | {snapshot.total_tokens:,} tokens",
                                 refresh=True)

    def close(self):
        self.bar.close()


async def run_summary(input_path, transform, **kwargs):
    try:
        return await summarize_file(input_path, transform, **kwargs)
    finally:
        if isinstance(transform, OpenAICompatibleTransform):
            await transform.aclose()


CONFIG_FLAGS = {
    "model": "model",
    "language": "language",
    "chunk_size": "chunk_size",
    "concurrency": "max_concurrent_requests",
    "retries": "max_retries",
    "backend": "backend",
    "base_url": "api_base_url",
    "api_key": "api_key",
}


def build_config(args):
    """Flags given on the command line win over BOOKSUM_* environment settings."""
    overrides = {field: getattr(args, flag) for flag, field in CONFIG_FLAGS.items()
                 if getattr(args, flag, None) is not None}
    return config.SummaryConfig(**overrides)


def print_auth_hint():
    print("Error: the LLM backend rejected the API key. Check --api-key or "
          f"the {config.API_KEY_ENV_VAR} environment variable.")


def summarize_command(args):
    if not os.path.exists(args.input):
        print(f"Error: Input file not found at '{args.input}'")
        return EXIT_USAGE
    if file_extension(args.input) not in SUPPORTED_EXTENSIONS:
        logger.warning("Unknown extension for '%s', reading it as plain text.", args.input)

    try:
        summary_config = build_config(args)
        transform = create_transform(summary_config.backend, base_url=summary_config.api_base_url,
                                     api_key=summary_config.api_key, timeout_sec=summary_config.request_timeout)
    except ValueError as e:
        print(f"Error: {e}")
        return EXIT_USAGE

    try:
        recorder = RunRecorder(args.history_file)
    except BackupFormatError as e:
        print(f"Error: {e}")
        return EXIT_FAILED
    progress_bar = ProgressBar()
    try:
        result = asyncio.run(run_summary(args.input, transform, recorder=recorder, log_sink=ConsoleLogSink(),
                                         config=summary_config, on_update=progress_bar))
    finally:
        progress_bar.close()

    if not result.succeeded:
        if result.error is not None and result.error.kind == ErrorKind.AUTH:
            print_auth_hint()
        else:
            print(f"Error: {result.error}")
        return EXIT_FAILED

    base_name = os.path.splitext(os.path.basename(args.input))[0]
    output_path = args.output or f"summary_{base_name}.md"
    write_markdown(result.summary, output_path)
    print(f"\nSummary written to: '{output_path}'")
    if args.epub_output:
        print(f"Writing summarized e-book to: '{args.epub_output}'")
        write_summary_epub(result.summary, args.epub_output, args.input)

    if result.partial:
        if result.error is not None and result.error.kind == ErrorKind.AUTH:
            print_auth_hint()
        print("Summarization finished with errors: the summary is the raw extracted draft.")
    else:
        print("Summarization complete!")
    return EXIT_OK


def history_command(args):
    try:
        recorder = RunRecorder(args.history_file)
    except BackupFormatError as e:
        print(f"Error: {e}")
        return EXIT_FAILED

    if args.history_action == "list":
        records = recorder.list()
        if not records:
            print("History is empty.")
        for record in records:
            created = date.fromtimestamp(record.timestamp / 1000).isoformat()
            print(f"{record.id}  {created}  {record.language}  {record.model}  "
                  f"{record.token_usage:>8,} tokens  {record.display_name}")
        return EXIT_OK

    if args.history_action == "show":
        record = recorder.get(args.id)
        if record is None:
            print(f"No history record with id '{args.id}'")
            return EXIT_FAILED
        print(record.summary)
        return EXIT_OK

    if args.history_action == "delete":
        if not recorder.delete(args.id):
            print(f"No history record with id '{args.id}'")
            return EXIT_FAILED
        print(f"Deleted '{args.id}'.")
        return EXIT_OK

    if args.history_action == "export":
        path = args.path or f"booksum_export_{date.today().isoformat()}.json"
        count = recorder.export_backup(path)
        print(f"Exported {count} records to '{path}'.")
        return EXIT_OK

    if args.history_action == "import":
        try:
            added = recorder.import_backup(args.path)
        except (BackupFormatError, OSError) as e:
            print(f"Error: could not import '{args.path}': {e}")
            return EXIT_FAILED
        print(f"Imported {added} new records.")
        return EXIT_OK

    return EXIT_USAGE


def build_parser():
    parser = argparse.ArgumentParser(prog="booksum", description="Summarize long documents with an LLM.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("--history-file", default=config.HISTORY_FILE_PATH)
    commands = parser.add_subparsers(dest="command", required=True)

    summarize = commands.add_parser("summarize", help="Summarize a PDF, EPUB, FB2 or text file.")
    summarize.add_argument("input")
    summarize.add_argument("-o", "--output", help="Markdown output path (default: summary_<name>.md).")
    summarize.add_argument("--epub-output", help="Also write the summary as an EPUB.")
    summarize.add_argument("-l", "--language",
                           help=f"Output language: {', '.join(config.LANGUAGE_NAMES)} (default: {config.DEFAULT_LANGUAGE}).")
    summarize.add_argument("-m", "--model", help=f"Default: {config.MODEL_IDENTIFIER}.")
    summarize.add_argument("--chunk-size", type=int, help=f"Default: {config.CHUNK_SIZE}.")
    summarize.add_argument("--concurrency", type=int, help=f"Default: {config.MAX_CONCURRENT_REQUESTS}.")
    summarize.add_argument("--retries", type=int, help=f"Default: {config.MAX_RETRIES}.")
    summarize.add_argument("--backend", choices=("lmstudio", "http"), help="Default: lmstudio.")
    summarize.add_argument("--base-url", help=f"Default: {config.API_BASE_URL}.")
    summarize.add_argument("--api-key", help=f"Defaults to ${config.API_KEY_ENV_VAR}.")
    summarize.set_defaults(handler=summarize_command)

    history = commands.add_parser("history", help="Manage saved summaries.")
    actions = history.add_subparsers(dest="history_action", required=True)
    actions.add_parser("list")
    show = actions.add_parser("show")
    show.add_argument("id")
    delete = actions.add_parser("delete")
    delete.add_argument("id")
    export = actions.add_parser("export")
    export.add_argument("path", nargs="?")
    import_ = actions.add_parser("import")
    import_.add_argument("path")
    history.set_defaults(handler=history_command)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
