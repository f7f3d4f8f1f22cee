from shotsmith.runner import main

main()
