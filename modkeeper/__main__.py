from modkeeper.cli import main

raise SystemExit(main())
