import sys

from booksum.ebook_summarizer import main

sys.exit(main())
