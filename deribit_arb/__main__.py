from deribit_arb.main import main

raise SystemExit(main())
