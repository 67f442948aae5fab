import argparse
import glob
import os
import traceback
from typing import List

from app.chat_engine import ChatEngine
from app.config import config
from app.errors import ChatError


def find_pdf_files(content_dir: str) -> List[str]:
    """All PDF files in the content directory (flat structure)"""
    return sorted(glob.glob(os.path.join(content_dir, "*.pdf")))


def index_pdf_file(engine: ChatEngine, course_id: str, file_path: str, resume: bool = False) -> int:
    """Index a single PDF file, returning the number of chunks created"""
    try:
        with open(file_path, "rb") as f:
            data = f.read()
        result = engine.knowledge_store.index_pdf(course_id, data, os.path.basename(file_path), resume=resume)
        print(f"Processed {file_path} - {result['chunksCreated']} chunks")
        return result["chunksCreated"]
    except ChatError as e:
        print(f"Skipping {file_path}: {e}")
        return 0
    except Exception as e:
        print(f"Error processing {file_path}: {e}")
        print(traceback.format_exc())
        return 0


def main():
    """Index every PDF of a content directory into a course's knowledge base"""
    parser = argparse.ArgumentParser(description="Index course PDFs for retrieval")
    parser.add_argument("course_id", help="Course id the content belongs to")
    parser.add_argument("content_dir", nargs="?", default="content", help="Directory with PDF files")
    parser.add_argument("--resume", action="store_true",
                        help="Skip chunks already stored by an interrupted run")
    parser.add_argument("--replace", action="store_true",
                        help="Delete the course's existing chunks before indexing")
    args = parser.parse_args()

    print("Starting content indexing process...")

    pdf_files = find_pdf_files(args.content_dir)
    if not pdf_files:
        print(f"No documents found. Please add PDF files to the {args.content_dir} directory.")
        return

    engine = ChatEngine.from_config(config)
    try:
        if args.replace:
            deleted = engine.knowledge_store.delete_course_chunks(args.course_id)
            print(f"Deleted {deleted['deletedCount']} existing chunks")

        total = sum(index_pdf_file(engine, args.course_id, path, args.resume) for path in pdf_files)

        stats = engine.knowledge_store.get_stats()
        print(f"\nIndexed {total} chunks from {len(pdf_files)} files")
        print(f"Knowledge base: {stats['totalChunks']} chunks across {stats['coursesCovered']} courses")
    finally:
        engine.close()

    print("Content indexing complete!")


if __name__ == "__main__":
    main()
