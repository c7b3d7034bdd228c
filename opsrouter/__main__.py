from opsrouter.cli import main

raise SystemExit(main())
