from attachment_zipper.cli import main

raise SystemExit(main())
