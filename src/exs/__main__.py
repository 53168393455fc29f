from exs.cli import main

raise SystemExit(main())
